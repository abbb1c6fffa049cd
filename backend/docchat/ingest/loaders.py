"""Text extraction for supported upload types, and the object store they read from."""

from __future__ import annotations

import asyncio
from pathlib import Path

import fitz

from docchat.core.errors import (
    AudioExtractionError,
    NotFoundError,
    PDFExtractionError,
    ValidationError,
)
from docchat.core.retry import RetryPolicy
from docchat.ingest.types import ExtractedText, UploadType
from docchat.llm.client import ProviderClient
from docchat.utils.text import normalize


class LocalFileStore:
    """Object store rooted at a directory; references are relative paths."""

    def __init__(self, root: Path) -> None:
        self.root = root.expanduser()

    def _resolve(self, ref: str) -> Path:
        root = self.root.resolve()
        path = (root / ref).resolve()
        if root not in path.parents:
            raise ValidationError(f"File reference {ref!r} escapes the store", context={"file_ref": ref})
        return path

    def put(self, ref: str, data: bytes) -> None:
        path = self._resolve(ref)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    async def fetch(self, ref: str) -> bytes:
        path = self._resolve(ref)
        if not path.is_file():
            raise NotFoundError(f"File {ref!r} not found", context={"file_ref": ref})
        return await asyncio.to_thread(path.read_bytes)


class BaseLoader:
    """Common extractor interface."""

    upload_type: UploadType

    async def extract(self, payload: bytes, file_name: str | None = None) -> ExtractedText:  # pragma: no cover - interface
        raise NotImplementedError


class TextLoader(BaseLoader):
    upload_type = UploadType.TEXT

    async def extract(self, payload: bytes, file_name: str | None = None) -> ExtractedText:
        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ValidationError("Text uploads must be UTF-8", context={"file_name": file_name}) from exc
        if not text.strip():
            raise ValidationError("Text upload is empty", context={"file_name": file_name})
        return ExtractedText(text=text, upload_type=self.upload_type)


class PDFLoader(BaseLoader):
    """PyMuPDF extraction with one ``[Page N]`` marker ahead of every page."""

    upload_type = UploadType.PDF

    async def extract(self, payload: bytes, file_name: str | None = None) -> ExtractedText:
        return await asyncio.to_thread(self._extract_sync, payload, file_name)

    def _extract_sync(self, payload: bytes, file_name: str | None) -> ExtractedText:
        try:
            with fitz.open(stream=payload, filetype="pdf") as doc:
                pages = [page.get_text("text", sort=True) for page in doc]
        except Exception as exc:
            raise PDFExtractionError(
                f"Could not read PDF: {exc}",
                context={"file_name": file_name},
            ) from exc
        parts = [f"[Page {number}] {normalize(content)}" for number, content in enumerate(pages, start=1)]
        if not any(normalize(content) for content in pages):
            raise PDFExtractionError(
                "PDF contains no extractable text",
                context={"file_name": file_name, "page_count": len(pages)},
            )
        return ExtractedText(
            text="\n\n".join(parts),
            upload_type=self.upload_type,
            page_count=len(pages),
        )


class AudioLoader(BaseLoader):
    """Provider transcription; transcripts carry no page markers."""

    upload_type = UploadType.AUDIO

    def __init__(self, client: ProviderClient, model: str, retry_policy: RetryPolicy, timeout: float | None = None) -> None:
        self.client = client
        self.model = model
        self.retry_policy = retry_policy
        self.timeout = timeout

    async def extract(self, payload: bytes, file_name: str | None = None) -> ExtractedText:
        name = file_name or "audio.mp3"
        try:
            text = await self.retry_policy.run(
                lambda: self.client.transcribe(self.model, payload, name, timeout=self.timeout),
                operation="transcribe",
                context={"file_name": name},
            )
        except ValidationError as exc:
            raise AudioExtractionError(f"Transcription rejected: {exc.message}", context=exc.context) from exc
        if not text.strip():
            raise AudioExtractionError("Transcription produced no text", context={"file_name": name})
        return ExtractedText(text=text.strip(), upload_type=self.upload_type)


class LoaderRegistry:
    def __init__(self, audio_loader: AudioLoader | None = None) -> None:
        self._loaders: dict[UploadType, BaseLoader] = {
            UploadType.TEXT: TextLoader(),
            UploadType.PDF: PDFLoader(),
        }
        if audio_loader is not None:
            self.register(audio_loader)

    def register(self, loader: BaseLoader) -> None:
        self._loaders[loader.upload_type] = loader

    def for_type(self, upload_type: UploadType) -> BaseLoader:
        loader = self._loaders.get(upload_type)
        if loader is None:
            raise ValidationError(f"No extractor configured for {upload_type.value} uploads")
        return loader

    async def extract(self, upload_type: UploadType, payload: bytes, file_name: str | None = None) -> ExtractedText:
        return await self.for_type(upload_type).extract(payload, file_name)


__all__ = [
    "LocalFileStore",
    "BaseLoader",
    "TextLoader",
    "PDFLoader",
    "AudioLoader",
    "LoaderRegistry",
]
