"""Short document summaries shown before the first question."""

from __future__ import annotations

import asyncio
from typing import Sequence

from docchat.core.logging import get_logger, log_context
from docchat.ingest.types import ChunkPayload
from docchat.llm.chat import ChatProvider
from docchat.utils.text import truncate

logger = get_logger(__name__)

MAX_ABSTRACT_CHUNKS = 30
MAX_ABSTRACT_CHARS = 20_000


def placeholder_abstract(title: str) -> str:
    return f"Ask questions about {title}"


class AbstractGenerator:
    def __init__(self, chat: ChatProvider, max_tokens: int = 200) -> None:
        self.chat = chat
        self.max_tokens = max_tokens

    async def generate(self, title: str, chunks: Sequence[ChunkPayload]) -> str | None:
        """Return a ~100 word abstract, or None when the provider fails."""
        excerpt = truncate(
            "\n\n".join(chunk.text for chunk in chunks[:MAX_ABSTRACT_CHUNKS]),
            MAX_ABSTRACT_CHARS,
        )
        if not excerpt:
            return None
        messages = [
            {
                "role": "system",
                "content": (
                    "You write short, neutral abstracts of documents. Reply with a single "
                    "paragraph of about 100 words and nothing else."
                ),
            },
            {"role": "user", "content": f"Document title: {title}\n\n{excerpt}"},
        ]
        try:
            abstract = await self.chat.complete(messages, max_tokens=self.max_tokens)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "Abstract generation failed, using placeholder",
                extra=log_context(title=title, error=str(exc)),
            )
            return None
        abstract = abstract.strip()
        return abstract or None


__all__ = ["AbstractGenerator", "placeholder_abstract", "MAX_ABSTRACT_CHUNKS", "MAX_ABSTRACT_CHARS"]
