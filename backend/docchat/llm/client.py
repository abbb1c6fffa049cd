"""HTTP client for OpenAI-compatible provider endpoints."""

from __future__ import annotations

from typing import Any, AsyncIterator, Sequence

import httpx
import orjson

from docchat.core.config import Settings
from docchat.core.errors import ServerError
from docchat.core.logging import get_logger, log_context

logger = get_logger(__name__)


class ProviderClient:
    """Thin async wrapper over the provider's REST API.

    Errors surface as ``httpx`` exceptions; callers classify them.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(timeout, connect=10.0),
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderClient":
        return cls(
            base_url=settings.provider_base_url,
            api_key=settings.provider_api_key,
            timeout=settings.chat_timeout,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def embeddings(self, model: str, inputs: Sequence[str], timeout: float | None = None) -> list[list[float]]:
        response = await self._client.post(
            "/embeddings",
            json={"model": model, "input": list(inputs)},
            timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
        )
        response.raise_for_status()
        data = response.json().get("data", [])
        ordered = sorted(data, key=lambda item: item.get("index", 0))
        return [item["embedding"] for item in ordered]

    async def chat(
        self,
        model: str,
        messages: Sequence[dict[str, str]],
        temperature: float = 0.2,
        max_tokens: int | None = None,
        response_format: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> str:
        payload: dict[str, Any] = {"model": model, "messages": list(messages), "temperature": temperature}
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        if response_format is not None:
            payload["response_format"] = response_format
        response = await self._client.post(
            "/chat/completions",
            json=payload,
            timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
        )
        response.raise_for_status()
        body = response.json()
        try:
            return body["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as exc:
            raise ServerError("Malformed chat completion response", context={"model": model}) from exc

    async def stream_chat(
        self,
        model: str,
        messages: Sequence[dict[str, str]],
        temperature: float = 0.2,
    ) -> AsyncIterator[str]:
        """Yield content deltas until the provider sends ``[DONE]``.

        Closing the generator leaves the ``stream`` context, which closes the
        underlying connection and stops generation upstream.
        """
        payload = {"model": model, "messages": list(messages), "temperature": temperature, "stream": True}
        async with self._client.stream("POST", "/chat/completions", json=payload) as response:
            response.raise_for_status()
            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                data = line[len("data:") :].strip()
                if data == "[DONE]":
                    break
                delta = _delta_content(data)
                if delta:
                    yield delta

    async def transcribe(
        self,
        model: str,
        audio: bytes,
        filename: str,
        timeout: float | None = None,
    ) -> str:
        response = await self._client.post(
            "/audio/transcriptions",
            data={"model": model, "response_format": "text"},
            files={"file": (filename, audio)},
            timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
        )
        response.raise_for_status()
        return response.text


def _delta_content(data: str) -> str | None:
    try:
        event = orjson.loads(data)
    except orjson.JSONDecodeError:
        logger.warning("Skipping undecodable stream frame", extra=log_context(frame=data[:200]))
        return None
    choices = event.get("choices") or []
    if not choices:
        return None
    return (choices[0].get("delta") or {}).get("content")


__all__ = ["ProviderClient"]
