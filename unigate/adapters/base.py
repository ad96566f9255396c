"""Provider adapter contract."""

from __future__ import annotations

from abc import ABC, abstractmethod

from unigate.core.models import ChatRequest, ProviderName, UpstreamResponse


class ProviderAdapter(ABC):
    provider: ProviderName

    @abstractmethod
    async def chat_completions(self, request: ChatRequest) -> UpstreamResponse:
        """Run one upstream call; non-2xx results are returned, not raised."""

    async def aclose(self) -> None:
        return None
