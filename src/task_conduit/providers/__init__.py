"""Provider adapters and the type registry."""

from __future__ import annotations

from task_conduit.config import ProviderSettings
from task_conduit.providers.base import ProviderAdapter
from task_conduit.providers.json_cli import JsonCliProvider

DEFAULT_PROVIDER_TYPE = JsonCliProvider.id

_PROVIDERS_BY_TYPE: dict[str, ProviderAdapter] = {
    JsonCliProvider.id: JsonCliProvider(),
}


def resolve_provider(settings: ProviderSettings | None) -> ProviderAdapter | None:
    """Return the adapter for `settings.type`, or None when unknown."""

    if settings is None:
        return None
    return _PROVIDERS_BY_TYPE.get(settings.type or DEFAULT_PROVIDER_TYPE)


__all__ = ["DEFAULT_PROVIDER_TYPE", "JsonCliProvider", "ProviderAdapter", "resolve_provider"]
