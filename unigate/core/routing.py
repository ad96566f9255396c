"""Model to provider routing."""

from __future__ import annotations

from collections.abc import Mapping

from unigate.core.models import ProviderName


class RequestRouter:
    def __init__(self, model_mappings: Mapping[str, ProviderName], default_provider: ProviderName) -> None:
        self._mappings = dict(model_mappings)
        self.default_provider = default_provider

    def resolve_provider(self, model: str) -> ProviderName:
        return self._mappings.get(model, self.default_provider)
