from __future__ import annotations

from dataclasses import dataclass, field
import os
from pathlib import Path
import tomllib
from typing import cast

from aihelper.models import ProviderIdentity


_PROVIDER_IDENTITIES: tuple[ProviderIdentity, ...] = ("claude", "gemini", "auto")


@dataclass(frozen=True)
class AIConfig:
    working_dir: Path = Path("/tmp/ai-github-helper")
    preferred_provider: ProviderIdentity = "claude"
    fallback_enabled: bool = True
    task_timeout_seconds: float = 600.0
    probe_timeout_seconds: float = 10.0
    command_timeout_seconds: float = 300.0


@dataclass(frozen=True)
class ClaudeConfig:
    executable: str = "claude"


@dataclass(frozen=True)
class GeminiConfig:
    executable: str = "gemini"
    primary_model: str = "gemini-2.5-pro"
    secondary_model: str = "gemini-2.5-flash"
    grace_seconds: float = 5.0


@dataclass(frozen=True)
class WebhookConfig:
    mention: str = "@ai-helper"
    issue_label: str = "ai-helper"
    secret_env: str = "GITHUB_WEBHOOK_SECRET"

    def secret(self) -> str:
        return os.environ.get(self.secret_env, "")


@dataclass(frozen=True)
class AppConfig:
    ai: AIConfig = field(default_factory=AIConfig)
    claude: ClaudeConfig = field(default_factory=ClaudeConfig)
    gemini: GeminiConfig = field(default_factory=GeminiConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    log_dir: Path | None = None


class ConfigError(ValueError):
    pass


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    ai_data = _optional_table(data, "ai") or {}
    claude_data = _optional_table(data, "claude") or {}
    gemini_data = _optional_table(data, "gemini") or {}
    webhook_data = _optional_table(data, "webhook") or {}
    logging_data = _optional_table(data, "logging") or {}

    defaults = AIConfig()
    ai = AIConfig(
        working_dir=Path(
            _str_with_default(ai_data, "working_dir", str(defaults.working_dir))
        ).expanduser(),
        preferred_provider=_provider_with_default(
            ai_data, "preferred_provider", defaults.preferred_provider
        ),
        fallback_enabled=_bool_with_default(ai_data, "fallback_enabled", defaults.fallback_enabled),
        task_timeout_seconds=_positive_number_with_default(
            ai_data, "task_timeout_seconds", defaults.task_timeout_seconds
        ),
        probe_timeout_seconds=_positive_number_with_default(
            ai_data, "probe_timeout_seconds", defaults.probe_timeout_seconds
        ),
        command_timeout_seconds=_positive_number_with_default(
            ai_data, "command_timeout_seconds", defaults.command_timeout_seconds
        ),
    )

    claude = ClaudeConfig(
        executable=_str_with_default(claude_data, "executable", ClaudeConfig.executable),
    )

    gemini = GeminiConfig(
        executable=_str_with_default(gemini_data, "executable", GeminiConfig.executable),
        primary_model=_str_with_default(gemini_data, "primary_model", GeminiConfig.primary_model),
        secondary_model=_str_with_default(
            gemini_data, "secondary_model", GeminiConfig.secondary_model
        ),
        grace_seconds=_positive_number_with_default(
            gemini_data, "grace_seconds", GeminiConfig.grace_seconds
        ),
    )
    if gemini.primary_model == gemini.secondary_model:
        raise ConfigError("gemini.secondary_model must differ from gemini.primary_model")

    webhook = WebhookConfig(
        mention=_str_with_default(webhook_data, "mention", WebhookConfig.mention),
        issue_label=_str_with_default(webhook_data, "issue_label", WebhookConfig.issue_label),
        secret_env=_str_with_default(webhook_data, "secret_env", WebhookConfig.secret_env),
    )
    if not webhook.mention.startswith("@"):
        raise ConfigError("webhook.mention must start with '@'")

    log_dir_raw = _optional_str(logging_data, "dir")
    log_dir = Path(log_dir_raw).expanduser() if log_dir_raw is not None else None

    return AppConfig(ai=ai, claude=claude, gemini=gemini, webhook=webhook, log_dir=log_dir)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _positive_number_with_default(data: dict[str, object], key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ConfigError(f"{key} must be a number")
    if value <= 0:
        raise ConfigError(f"{key} must be > 0")
    return float(value)


def _provider_with_default(
    data: dict[str, object], key: str, default: ProviderIdentity
) -> ProviderIdentity:
    value = data.get(key, default)
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be one of: claude, gemini, auto")
    normalized = value.strip().lower()
    if normalized not in _PROVIDER_IDENTITIES:
        raise ConfigError(f"{key} must be one of: claude, gemini, auto")
    return cast(ProviderIdentity, normalized)
