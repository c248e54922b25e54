from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
import tomllib

from savant.model_client import ANTHROPIC_MESSAGES_URL


@dataclass(frozen=True)
class RuntimeConfig:
    state_dir: Path
    poll_interval_seconds: int
    enable_history: bool = True
    history_db: Path | None = None

    @property
    def history_db_path(self) -> Path:
        return self.history_db or self.state_dir / "conversations.db"


@dataclass(frozen=True)
class RepoConfig:
    owner: str
    name: str
    bot_login: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True)
class ModelConfig:
    model: str
    max_tokens: int
    max_iterations: int
    api_url: str = ANTHROPIC_MESSAGES_URL
    api_key_env: str = "ANTHROPIC_API_KEY"
    timeout_seconds: int = 600
    max_rate_limit_retries: int = 10


@dataclass(frozen=True)
class ValidationConfig:
    workflow: str | None
    poll_interval_seconds: int = 30
    timeout_seconds: int = 600


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    repo: RepoConfig
    model: ModelConfig
    validation: ValidationConfig


class ConfigError(ValueError):
    pass


def load_config(path: Path) -> AppConfig:
    try:
        with path.open("rb") as fh:
            data = tomllib.load(fh)
    except FileNotFoundError as exc:
        raise ConfigError(f"config file not found: {path}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"config file {path} is not valid TOML: {exc}") from exc

    runtime_table = _Section.required(data, "runtime")
    repo_table = _Section.required(data, "repo")
    model_table = _Section.optional(data, "model")
    validation_table = _Section.optional(data, "validation")

    history_db = runtime_table.optional_string("history_db")
    runtime = RuntimeConfig(
        state_dir=Path(runtime_table.string("state_dir", "~/.savant")).expanduser(),
        poll_interval_seconds=runtime_table.integer("poll_interval_seconds", 300, minimum=5),
        enable_history=runtime_table.boolean("enable_history", True),
        history_db=Path(history_db).expanduser() if history_db is not None else None,
    )
    repo = RepoConfig(
        owner=repo_table.string("owner"),
        name=repo_table.string("name"),
        bot_login=repo_table.string("bot_login").strip().lower(),
    )
    model = ModelConfig(
        model=model_table.string("model", "claude-sonnet-4-5"),
        max_tokens=model_table.integer("max_tokens", 8192, minimum=1),
        max_iterations=model_table.integer("max_iterations", 500, minimum=1),
        api_url=model_table.string("api_url", ANTHROPIC_MESSAGES_URL),
        api_key_env=model_table.string("api_key_env", "ANTHROPIC_API_KEY"),
        timeout_seconds=model_table.integer("timeout_seconds", 600, minimum=1),
        max_rate_limit_retries=model_table.integer("max_rate_limit_retries", 10, minimum=0),
    )
    validation = ValidationConfig(
        workflow=validation_table.optional_string("workflow"),
        poll_interval_seconds=validation_table.integer("poll_interval_seconds", 30, minimum=1),
        timeout_seconds=validation_table.integer("timeout_seconds", 600, minimum=1),
    )
    if validation.timeout_seconds < validation.poll_interval_seconds:
        raise ConfigError("validation.timeout_seconds must be >= validation.poll_interval_seconds")

    return AppConfig(runtime=runtime, repo=repo, model=model, validation=validation)


def resolve_api_key(config: ModelConfig, environ: Mapping[str, str]) -> str:
    value = environ.get(config.api_key_env, "").strip()
    if not value:
        raise ConfigError(f"environment variable {config.api_key_env} must hold the model API key")
    return value


def parse_repo_full_name(value: str) -> tuple[str, str]:
    owner, sep, name = value.strip().partition("/")
    if not sep or not owner or not name or "/" in name:
        raise ConfigError(f"repository must look like owner/name, got {value!r}")
    return owner, name


_MISSING = object()


class _Section:
    """Typed reads from one TOML table; errors name the ``section.key``."""

    def __init__(self, name: str, values: Mapping[str, object]) -> None:
        self.name = name
        self.values = values

    @classmethod
    def required(cls, data: Mapping[str, object], name: str) -> _Section:
        if not isinstance(data.get(name), dict):
            raise ConfigError(f"[{name}] is required and must be a TOML table")
        return cls(name, data[name])  # type: ignore[arg-type]

    @classmethod
    def optional(cls, data: Mapping[str, object], name: str) -> _Section:
        value = data.get(name, {})
        if not isinstance(value, dict):
            raise ConfigError(f"[{name}] must be a TOML table when provided")
        return cls(name, value)

    def string(self, key: str, default: object = _MISSING) -> str:
        value = self.values.get(key, default)
        if not isinstance(value, str) or not value:
            raise ConfigError(f"{self.name}.{key} is required and must be a non-empty string")
        return value

    def optional_string(self, key: str) -> str | None:
        if key not in self.values:
            return None
        value = self.values[key]
        if not isinstance(value, str) or not value:
            raise ConfigError(f"{self.name}.{key} must be a non-empty string if provided")
        return value

    def integer(self, key: str, default: int, *, minimum: int) -> int:
        value = self.values.get(key, default)
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"{self.name}.{key} must be an integer")
        if value < minimum:
            raise ConfigError(f"{self.name}.{key} must be >= {minimum}")
        return value

    def boolean(self, key: str, default: bool) -> bool:
        value = self.values.get(key, default)
        if not isinstance(value, bool):
            raise ConfigError(f"{self.name}.{key} must be a boolean")
        return value
