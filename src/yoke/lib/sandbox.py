"""Filesystem confinement and bounded shell execution.

Two primitives guard every side effect the model can cause:

- ``PathSandbox`` resolves a path argument (relative to the project root,
  ``..`` collapsed, symlinks followed) and refuses anything that lands
  outside the root. There is no mode that disables this check.
- ``ShellRunner`` runs a command through ``/bin/sh -c`` in its own process
  group with a wall-clock timeout and an output byte cap. On timeout or
  cancellation the whole group is killed; output past the cap is dropped
  from the buffer and the result says how much was omitted.

Examples:
    Confine paths to a project::

        >>> sandbox = PathSandbox(root=Path("/work/repo"))
        >>> sandbox.resolve("src/main.py")
        PosixPath('/work/repo/src/main.py')
        >>> sandbox.resolve("../../etc/passwd")
        Traceback (most recent call last):
        ...
        yoke.lib.errors.PathEscapeError: Path '../../etc/passwd' escapes project root /work/repo

    Run a command with limits::

        >>> runner = ShellRunner(cwd=Path("/work/repo"), timeout_seconds=5, max_output_bytes=1000)
        >>> result = await runner.run("echo hi")
        >>> result["stdout"], result["exit_code"], result["truncated"]
        ('hi\\n', 0, False)
"""

import asyncio
import logging
import os
import signal
import time
from pathlib import Path
from typing import TypedDict

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator

from yoke.lib.errors import ExecutionTimeoutError, InvalidInputError, PathEscapeError

logger = logging.getLogger(__name__)

READ_CHUNK_BYTES = 65536


# --- Path confinement ---


class PathSandbox(BaseModel):
    """Resolves and validates path arguments against a project root."""

    model_config = ConfigDict(frozen=True)

    root: Path = Field(description="Project root; every resolved path must be under it")

    @field_validator("root")
    @classmethod
    def resolve_root(cls, value: Path) -> Path:
        return value.resolve()

    def resolve(self, path: str | Path) -> Path:
        """Resolve ``path`` to an absolute, symlink-free path inside the root.

        Relative paths are taken relative to the root. Absolute paths are
        accepted only if they resolve inside it.

        Raises:
            PathEscapeError: If the resolved path is outside the root, or
                cannot be resolved at all (e.g. a symlink loop).
            InvalidInputError: If ``path`` is not a usable path (e.g. it
                contains a NUL byte).
        """
        raw = Path(path)
        candidate = raw if raw.is_absolute() else self.root / raw
        try:
            resolved = candidate.resolve()
        except ValueError as e:
            raise InvalidInputError(f"Invalid path {str(path)!r}: {e}") from e
        except (OSError, RuntimeError) as e:
            raise PathEscapeError(path, root=self.root) from e

        if not resolved.is_relative_to(self.root):
            logger.warning("Blocked path escape: %s -> %s", path, resolved)
            raise PathEscapeError(path, root=self.root)
        return resolved

    def contains(self, path: str | Path) -> bool:
        """True if ``path`` resolves inside the root."""
        try:
            self.resolve(path)
        except (PathEscapeError, InvalidInputError):
            return False
        return True

    def display(self, path: Path) -> str:
        """Root-relative form of an already-resolved path, for tool output."""
        try:
            return str(path.relative_to(self.root)) or "."
        except ValueError:
            return str(path)


# --- Shell execution ---


class ShellResult(TypedDict):
    """Result of a bounded shell command."""

    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int
    truncated: bool
    omitted_bytes: int


class CappedOutput:
    """Byte budget shared by stdout and stderr of one process."""

    def __init__(self, limit: int) -> None:
        self.remaining = limit
        self.omitted = 0

    def take(self, chunk: bytes) -> bytes:
        kept = chunk[: max(self.remaining, 0)]
        self.remaining -= len(kept)
        self.omitted += len(chunk) - len(kept)
        return kept


def decode_output(output: bytes) -> str:
    """Decode process output, replacing undecodable bytes."""
    return output.decode("utf-8", errors="replace")


class ShellRunner(BaseModel):
    """Runs shell commands with a timeout, a forced kill and an output cap."""

    cwd: Path
    timeout_seconds: float = Field(default=120.0, gt=0)
    max_output_bytes: int = Field(default=100_000, gt=0)
    env: dict[str, str] | None = Field(
        default=None, description="Extra environment variables layered over os.environ"
    )

    _shell: str = PrivateAttr(default="/bin/sh")

    async def run(self, command: str) -> ShellResult:
        """Run ``command`` and collect its output.

        Raises:
            ExecutionTimeoutError: If the command outlives ``timeout_seconds``.
                The process group is killed before this is raised.
        """
        env = {**os.environ, **self.env} if self.env else None
        start = time.perf_counter()
        proc = await asyncio.create_subprocess_exec(
            self._shell,
            "-c",
            command,
            cwd=self.cwd,
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
        budget = CappedOutput(self.max_output_bytes)
        stdout = bytearray()
        stderr = bytearray()

        async def drain(stream: asyncio.StreamReader | None, sink: bytearray) -> None:
            if stream is None:
                return
            while chunk := await stream.read(READ_CHUNK_BYTES):
                sink.extend(budget.take(chunk))

        try:
            await asyncio.wait_for(
                asyncio.gather(
                    drain(proc.stdout, stdout),
                    drain(proc.stderr, stderr),
                    proc.wait(),
                ),
                timeout=self.timeout_seconds,
            )
        except TimeoutError:
            logger.warning("Command timed out after %ss: %s", self.timeout_seconds, command)
            raise ExecutionTimeoutError("Command", self.timeout_seconds) from None
        finally:
            if proc.returncode is None:
                kill_process_group(proc.pid)
                await proc.wait()

        return ShellResult(
            exit_code=proc.returncode if proc.returncode is not None else -1,
            stdout=decode_output(bytes(stdout)),
            stderr=decode_output(bytes(stderr)),
            duration_ms=int((time.perf_counter() - start) * 1000),
            truncated=budget.omitted > 0,
            omitted_bytes=budget.omitted,
        )


def kill_process_group(pid: int) -> None:
    """SIGKILL the process group led by ``pid``; a vanished group is fine."""
    try:
        os.killpg(pid, signal.SIGKILL)
    except ProcessLookupError:
        logger.debug("Process group %d already gone", pid)
