"""Configuration management.

Two layers:

1. ``Settings`` - process settings from the environment (pydantic-settings),
   for secrets and quick overrides. ``.env.local`` overrides ``.env``.
2. ``YokeConfig`` - the engine configuration, merged from TOML files
   (user, then project, then project-local; later wins), overlaid with
   ``Settings`` overrides, validated once and then read-only. Permission
   patterns are parsed into rule variants at load time.

Usage:
    from yoke.agent.config import load_config, settings

    config = load_config(project_root)
    config.rules            # parsed RuleSet
    config.default_target   # Target("gpt-4o-mini", "chatgpt")

Example ``.yoke/config.toml``::

    default_target = "gpt-4o@chatgpt"
    max_turns = 20

    [permissions]
    mode = "acceptEdits"
    allow = ["Bash(git status)", "Bash(pytest:*)"]
    deny = ["Bash(rm -rf:*)"]

    [routes]
    review = "claude-sonnet-4-5@claude"

    [mcp_servers.calc]
    command = "calc-server"

    [[hooks]]
    event = "PreToolUse"
    matcher = "^Bash$"
    command = [".yoke/hooks/check-bash.sh"]

Hooks are collected from every file in order rather than replaced, so user
and project hooks both run. Permission rules added from the REPL are saved
to ``.yoke/permissions.local.toml``, which is merged last.
"""

import json
import logging
import os
import tomllib
from pathlib import Path
from typing import Any, Literal, Self

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    ValidationError,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from yoke.agent.models import ModeValue, PermissionMode, Target, TargetValue
from yoke.agent.policy import RuleSet
from yoke.agent.routing import CATEGORY_NAMES
from yoke.lib import paths
from yoke.lib.errors import ConfigError
from yoke.lib.hooks import HookMatcher

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Process settings loaded from environment variables.

    Backend API keys use their providers' standard names so the same
    environment works with other tools. Engine overrides use ``YOKE_``.
    """

    model_config = SettingsConfigDict(
        env_file=(".env", ".env.local"),
        extra="ignore",
    )

    @model_validator(mode="after")
    def warn_missing_optional_keys(self) -> Self:
        """Warn at startup if no hosted backend has a key."""
        if not (self.openai_api_key or self.anthropic_api_key or self.venice_api_key):
            logger.warning(
                "No backend API key set (OPENAI_API_KEY, ANTHROPIC_API_KEY, "
                "VENICE_API_KEY); only local backends will work"
            )
        return self

    # ==========================================================================
    # BACKEND API KEYS
    # ==========================================================================

    openai_api_key: str | None = Field(
        default=None,
        validation_alias="OPENAI_API_KEY",
        description="OpenAI API key (chatgpt backend)",
    )

    anthropic_api_key: str | None = Field(
        default=None,
        validation_alias="ANTHROPIC_API_KEY",
        description="Anthropic API key (claude backend)",
    )

    venice_api_key: str | None = Field(
        default=None,
        validation_alias="VENICE_API_KEY",
        description="Venice API key (venice backend)",
    )

    ollama_base_url: str = Field(
        default="http://localhost:11434/v1",
        validation_alias="OLLAMA_BASE_URL",
        description="Ollama OpenAI-compatible endpoint",
    )

    # ==========================================================================
    # ENGINE OVERRIDES (take precedence over config files)
    # ==========================================================================

    target: str | None = Field(
        default=None,
        validation_alias="YOKE_TARGET",
        description="Default target as model@backend",
    )

    permission_mode: str | None = Field(
        default=None,
        validation_alias="YOKE_PERMISSION_MODE",
        description="Permission mode override",
    )

    max_turns: int | None = Field(
        default=None,
        validation_alias="YOKE_MAX_TURNS",
        description="Turn ceiling override",
    )

    # ==========================================================================
    # HTTP
    # ==========================================================================

    http_timeout_seconds: float = Field(
        default=120,
        validation_alias="YOKE_HTTP_TIMEOUT_SECONDS",
        description="Timeout for backend requests",
    )

    backend_max_attempts: int = Field(
        default=3,
        validation_alias="YOKE_BACKEND_MAX_ATTEMPTS",
        description="Attempts per backend request for transient failures",
    )

    def overrides(self) -> dict[str, Any]:
        """Config-file shaped overrides for the fields that are set."""
        result: dict[str, Any] = {}
        if self.target:
            result["default_target"] = self.target
        if self.permission_mode:
            result["permissions"] = {"mode": self.permission_mode}
        if self.max_turns is not None:
            result["max_turns"] = self.max_turns
        return result


# Singleton instance
settings = Settings.model_validate({})

# Export API keys to os.environ so backend configs can name them by env var
_ENV_EXPORTS = [
    ("OPENAI_API_KEY", settings.openai_api_key),
    ("ANTHROPIC_API_KEY", settings.anthropic_api_key),
    ("VENICE_API_KEY", settings.venice_api_key),
]

for env_name, value in _ENV_EXPORTS:
    if value and env_name not in os.environ:
        os.environ[env_name] = value


# =============================================================================
# ENGINE CONFIGURATION
# =============================================================================


class PermissionsConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    mode: ModeValue = PermissionMode.DEFAULT
    allow: tuple[str, ...] = ()
    ask: tuple[str, ...] = ()
    deny: tuple[str, ...] = ()
    network_floor: bool = Field(
        default=True, description="Deny curl/wget in every mode unless disabled"
    )


class BashConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    timeout_ms: int = Field(default=120_000, gt=0)
    max_output_bytes: int = Field(default=100_000, gt=0)


class ContextConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    max_chars: int = Field(default=250_000, gt=0)
    auto_compact_threshold: float = Field(default=0.95, ge=0.0, le=1.0)
    auto_compact_enabled: bool = True
    keep_last_messages: int = Field(default=10, ge=0)

    @property
    def compact_at(self) -> int:
        """Character total above which compaction runs."""
        return int(self.max_chars * self.auto_compact_threshold)


class BackendConfig(BaseModel):
    """An OpenAI-compatible chat endpoint."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    base_url: str
    api_key_env: str | None = Field(default=None, description="Env var holding the API key")
    headers: dict[str, str] = Field(default_factory=dict)

    def api_key(self) -> str | None:
        return os.environ.get(self.api_key_env) if self.api_key_env else None


class McpServerConfig(BaseModel):
    """An external tool server launched over stdio."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    command: str
    args: tuple[str, ...] = ()
    env: dict[str, str] = Field(default_factory=dict)
    cwd: Path | None = None
    enabled: bool = True
    timeout_ms: int = Field(default=30_000, gt=0)
    transport: Literal["stdio"] = "stdio"


def builtin_backends() -> dict[str, dict[str, Any]]:
    return {
        "chatgpt": {"base_url": "https://api.openai.com/v1", "api_key_env": "OPENAI_API_KEY"},
        "claude": {"base_url": "https://api.anthropic.com/v1", "api_key_env": "ANTHROPIC_API_KEY"},
        "venice": {"base_url": "https://api.venice.ai/api/v1", "api_key_env": "VENICE_API_KEY"},
        "ollama": {"base_url": settings.ollama_base_url},
    }


class YokeConfig(BaseModel):
    """Pre-merged, read-only engine configuration."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    project_root: Path
    permissions: PermissionsConfig = Field(default_factory=PermissionsConfig)
    bash: BashConfig = Field(default_factory=BashConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    max_turns: int = Field(default=12, ge=1)
    default_target: TargetValue = Target(model="gpt-4o-mini", backend="chatgpt")
    routes: dict[str, TargetValue] = Field(
        default_factory=dict, description="Category name -> target"
    )
    backends: dict[str, BackendConfig] = Field(default_factory=dict)
    mcp_servers: dict[str, McpServerConfig] = Field(default_factory=dict)
    hooks: tuple[HookMatcher, ...] = ()
    skill_dirs: tuple[Path, ...] = ()
    agent_dirs: tuple[Path, ...] = ()
    command_dirs: tuple[Path, ...] = ()

    _rules: RuleSet = PrivateAttr(default_factory=RuleSet)

    @model_validator(mode="after")
    def check_references(self) -> Self:
        """Parse rules once and check cross-field references."""
        problems: list[str] = []

        unknown = sorted(set(self.routes) - set(CATEGORY_NAMES))
        if unknown:
            problems.append(
                f"routes: unknown categories {unknown} (known: {list(CATEGORY_NAMES)})"
            )
        for label, target in [("default_target", self.default_target), *self.routes.items()]:
            if target.backend not in self.backends:
                problems.append(f"{label}: unknown backend '{target.backend}'")

        try:
            self._rules = RuleSet.from_patterns(
                self.permissions.allow,
                self.permissions.ask,
                self.permissions.deny,
                network_floor=self.permissions.network_floor,
            )
        except ValueError as e:
            problems.append(f"permissions: {e}")

        if problems:
            raise ValueError("; ".join(problems))
        return self

    @property
    def rules(self) -> RuleSet:
        return self._rules

    @property
    def mode(self) -> PermissionMode:
        return self.permissions.mode


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``; override wins."""
    merged = dict(base)
    for key, value in override.items():
        match (merged.get(key), value):
            case (dict() as left, dict() as right):
                merged[key] = deep_merge(left, right)
            case _:
                merged[key] = value
    return merged


def read_toml(path: Path) -> dict[str, Any]:
    """Read one TOML file.

    Raises:
        ConfigError: If the file is not valid TOML.
    """
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError([(str(path), str(e))]) from e


def load_config(
    project_root: Path,
    *,
    overrides: dict[str, Any] | None = None,
    files: list[Path] | None = None,
) -> YokeConfig:
    """Merge config sources and validate them into a ``YokeConfig``.

    Args:
        project_root: Root of the project the agent works in.
        overrides: Highest-precedence values (e.g. CLI flags), config-file shaped.
        files: Config files to merge in order. Defaults to the standard
            user/project/local locations.

    Returns:
        The validated, read-only configuration.

    Raises:
        ConfigError: Listing every invalid field.
    """
    root = project_root.resolve()
    raw: dict[str, Any] = {"backends": builtin_backends()}
    hooks: list[Any] = []
    for path in paths.config_files(root) if files is None else files:
        logger.debug("Loading config from %s", path)
        data = read_toml(path)
        found = data.pop("hooks", [])
        if not isinstance(found, list):
            raise ConfigError([(f"{path}: hooks", "must be an array of tables")])
        hooks.extend(found)
        raw = deep_merge(raw, data)
    raw = deep_merge(raw, settings.overrides())
    extra = dict(overrides or {})
    hooks.extend(extra.pop("hooks", []))
    raw = deep_merge(raw, extra)
    if hooks:
        raw["hooks"] = hooks

    raw["project_root"] = root
    raw.setdefault("skill_dirs", paths.skill_dirs(root))
    raw.setdefault("agent_dirs", paths.agent_dirs(root))
    raw.setdefault("command_dirs", paths.command_dirs(root))

    try:
        return YokeConfig.model_validate(raw)
    except ValidationError as e:
        problems = [
            (".".join(str(p) for p in err["loc"]) or "config", err["msg"])
            for err in e.errors()
        ]
        raise ConfigError(problems) from e


def save_local_permissions(project_root: Path, rules: RuleSet) -> Path:
    """Write the allow/ask/deny lists of ``rules`` to the local permissions file.

    The file holds the complete lists, so it replaces the lists of every
    earlier config file on the next load. The network floor is left out;
    ``load_config`` adds it back.

    Returns:
        The path written.
    """
    path = paths.permissions_file(project_root)
    lines = ["[permissions]"]
    for kind, patterns in rules.user_patterns().items():
        # JSON strings are valid TOML basic strings
        lines.append(f"{kind} = [{', '.join(json.dumps(p) for p in patterns)}]")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    logger.info("Saved permission rules to %s", path)
    return path
