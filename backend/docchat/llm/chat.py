"""Chat completion providers."""

from __future__ import annotations

from typing import AsyncIterator, Protocol, Sequence

from docchat.llm.client import ProviderClient

Message = dict[str, str]


class ChatProvider(Protocol):
    model: str

    async def complete(
        self,
        messages: Sequence[Message],
        *,
        max_tokens: int | None = None,
        json_mode: bool = False,
    ) -> str:
        ...

    def stream(self, messages: Sequence[Message]) -> AsyncIterator[str]:
        ...


class OpenAIChatProvider:
    """Chat completions from an OpenAI-compatible endpoint."""

    def __init__(
        self,
        client: ProviderClient,
        model: str = "gpt-4o-mini",
        temperature: float = 0.2,
        timeout: float | None = None,
    ) -> None:
        self.client = client
        self.model = model
        self.temperature = temperature
        self.timeout = timeout

    async def complete(
        self,
        messages: Sequence[Message],
        *,
        max_tokens: int | None = None,
        json_mode: bool = False,
    ) -> str:
        return await self.client.chat(
            self.model,
            messages,
            temperature=self.temperature,
            max_tokens=max_tokens,
            response_format={"type": "json_object"} if json_mode else None,
            timeout=self.timeout,
        )

    async def stream(self, messages: Sequence[Message]) -> AsyncIterator[str]:
        stream = self.client.stream_chat(self.model, messages, temperature=self.temperature)
        try:
            async for delta in stream:
                yield delta
        finally:
            await stream.aclose()


__all__ = ["ChatProvider", "OpenAIChatProvider", "Message"]
