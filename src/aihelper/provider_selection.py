from __future__ import annotations

import logging
from typing import cast

from aihelper.config import AppConfig
from aihelper.models import ProviderName
from aihelper.observability import log_event
from aihelper.providers import AIProvider, ClaudeProvider, GeminiProvider


LOGGER = logging.getLogger("aihelper.provider_selection")

# Probe order for "auto": primary tool first.
_PRIORITY: tuple[ProviderName, ...] = ("claude", "gemini")


class NoProviderAvailable(RuntimeError):
    """Raised when selection exhausts every provider option."""


class ProviderSelector:
    """Resolves a provider identity to one shared provider instance."""

    def __init__(self, providers: dict[ProviderName, AIProvider]) -> None:
        missing = [name for name in _PRIORITY if name not in providers]
        if missing:
            raise ValueError(f"Missing provider instances: {', '.join(missing)}")
        self._providers = dict(providers)

    @classmethod
    def from_config(cls, config: AppConfig) -> ProviderSelector:
        probe_timeout = config.ai.probe_timeout_seconds
        return cls(
            {
                "claude": ClaudeProvider(config.claude, probe_timeout_seconds=probe_timeout),
                "gemini": GeminiProvider(config.gemini, probe_timeout_seconds=probe_timeout),
            }
        )

    def provider(self, name: ProviderName) -> AIProvider:
        return self._providers[name]

    def resolve(self, identity: str, *, fallback_enabled: bool) -> AIProvider:
        if identity == "auto":
            return self._first_available()
        if identity not in _PRIORITY:
            raise NoProviderAvailable(f"Unsupported AI provider: {identity!r}")

        requested = self._providers[cast(ProviderName, identity)]
        if not fallback_enabled or requested.is_available():
            log_event(
                LOGGER,
                "provider_selected",
                provider=requested.name,
                requested=identity,
                fallback_enabled=fallback_enabled,
            )
            return requested

        alternate = self._providers[_other(requested.name)]
        if alternate.is_available():
            log_event(
                LOGGER,
                "provider_fallback_used",
                level=logging.WARNING,
                requested=identity,
                provider=alternate.name,
            )
            return alternate

        raise NoProviderAvailable(
            f"Neither {identity} nor fallback provider {alternate.name} are available. "
            "Please ensure at least one AI CLI is installed and configured."
        )

    def available_providers(self) -> list[ProviderName]:
        return [name for name in _PRIORITY if self._providers[name].is_available()]

    def _first_available(self) -> AIProvider:
        for name in _PRIORITY:
            provider = self._providers[name]
            if provider.is_available():
                log_event(LOGGER, "provider_selected", provider=name, requested="auto")
                return provider
        raise NoProviderAvailable(
            "No AI providers are available. "
            "Please ensure Claude CLI or Gemini CLI is installed and configured."
        )


def _other(name: ProviderName) -> ProviderName:
    return "gemini" if name == "claude" else "claude"
