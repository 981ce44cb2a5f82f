"""Integration tests for bounded shell execution and path confinement.

These spawn real processes and create real symlinks. No backend involved.
"""

import asyncio
import time
from collections.abc import Callable
from pathlib import Path

import pytest

from tests.conftest import make_config, make_session, make_tool_context, request
from yoke.agent.context import Session, ToolContext
from yoke.agent.models import PermissionMode
from yoke.lib.errors import ExecutionTimeoutError, PathEscapeError
from yoke.lib.responses import error_code
from yoke.lib.sandbox import PathSandbox, ShellRunner

pytestmark = pytest.mark.integration

SessionFactory = Callable[..., Session]


@pytest.fixture
def runner(tmp_path: Path) -> ShellRunner:
    return ShellRunner(cwd=tmp_path, timeout_seconds=5, max_output_bytes=1000)


class TestShellRunner:
    """Timeouts kill the process group; output is capped."""

    @pytest.mark.asyncio
    async def test_runs_in_cwd(self, runner: ShellRunner, tmp_path: Path) -> None:
        result = await runner.run("pwd; echo err >&2")

        assert result["exit_code"] == 0
        assert Path(result["stdout"].strip()).resolve() == tmp_path.resolve()
        assert result["stderr"] == "err\n"

    @pytest.mark.asyncio
    async def test_timeout_kills(self, tmp_path: Path) -> None:
        runner = ShellRunner(cwd=tmp_path, timeout_seconds=0.5)
        marker = tmp_path / "survived"
        start = time.monotonic()

        with pytest.raises(ExecutionTimeoutError):
            await runner.run(f"sleep 2 && touch {marker}")

        assert time.monotonic() - start < 2
        await asyncio.sleep(2)
        assert not marker.exists()

    @pytest.mark.asyncio
    async def test_output_capped(self, runner: ShellRunner) -> None:
        result = await runner.run("head -c 5000 /dev/zero | tr '\\0' 'a'")

        assert len(result["stdout"]) == 1000
        assert result["truncated"]
        assert result["omitted_bytes"] == 4000

    @pytest.mark.asyncio
    async def test_non_zero_exit(self, runner: ShellRunner) -> None:
        result = await runner.run("exit 3")

        assert result["exit_code"] == 3


class TestBashTool:
    """The Bash tool through dispatch, in bypass mode."""

    @pytest.fixture
    def ctx(self, session_factory: SessionFactory) -> ToolContext:
        return make_tool_context(session_factory(), mode=PermissionMode.BYPASS_PERMISSIONS)

    @pytest.mark.asyncio
    async def test_success(self, ctx: ToolContext) -> None:
        result = await ctx.session.registry.dispatch(request("Bash", command="ls src"), ctx)

        assert not result.is_error
        assert "app.py" in result.content

    @pytest.mark.asyncio
    async def test_failure_is_tool_error(self, ctx: ToolContext) -> None:
        result = await ctx.session.registry.dispatch(
            request("Bash", command="echo broken >&2; exit 2"), ctx
        )

        assert error_code(result.content) == "tool_error"
        assert "broken" in result.content

    @pytest.mark.asyncio
    async def test_network_floor_under_bypass(self, ctx: ToolContext) -> None:
        result = await ctx.session.registry.dispatch(
            request("Bash", command="curl https://example.com"), ctx
        )

        assert error_code(result.content) == "permission_denied"

    @pytest.mark.asyncio
    async def test_timeout_result(self, project: Path) -> None:
        config = make_config(project, bash={"timeout_ms": 300})
        ctx = make_tool_context(make_session(config), mode=PermissionMode.BYPASS_PERMISSIONS)

        result = await ctx.session.registry.dispatch(request("Bash", command="sleep 5"), ctx)

        assert error_code(result.content) == "timeout"


class TestSymlinkEscape:
    def test_symlink_out_of_root(self, tmp_path: Path) -> None:
        root = tmp_path / "root"
        outside = tmp_path / "outside"
        root.mkdir()
        outside.mkdir()
        (outside / "secret.txt").write_text("s3cret")
        (root / "link").symlink_to(outside, target_is_directory=True)

        sandbox = PathSandbox(root=root)

        with pytest.raises(PathEscapeError):
            sandbox.resolve("link/secret.txt")

    def test_symlink_inside_root(self, tmp_path: Path) -> None:
        (tmp_path / "real.txt").write_text("x")
        (tmp_path / "alias.txt").symlink_to(tmp_path / "real.txt")

        sandbox = PathSandbox(root=tmp_path)

        assert sandbox.resolve("alias.txt") == (tmp_path / "real.txt").resolve()
