from __future__ import annotations

import asyncio
import inspect
import io
import mimetypes
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Sequence, Union

import httpx
from docx import Document as DocxDocument
from pypdf import PdfReader
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from storymode.utils.env import get_float_env, get_int_env
from storymode.utils.errors import AttachmentExtractionFailed
from storymode.utils.logging import get_logger
from storymode.utils.observability import get_metrics

log = get_logger(__name__)

SUPPORTED_EXTENSIONS = {".pdf", ".doc", ".docx", ".txt", ".rtf", ".md", ".json"}
_DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

Extractor = Callable[["Attachment"], Union[str, Awaitable[str]]]


@dataclass(frozen=True)
class Attachment:
    filename: str
    content: bytes
    mime_type: str = "application/octet-stream"

    @classmethod
    def from_path(cls, path: str | Path) -> "Attachment":
        file_path = Path(path)
        guessed, _ = mimetypes.guess_type(file_path.name)
        return cls(filename=file_path.name, content=file_path.read_bytes(), mime_type=guessed or "application/octet-stream")

    @property
    def extension(self) -> str:
        return Path(self.filename).suffix.lower()


@dataclass
class ResolvedAttachment:
    filename: str
    text: str | None = None
    error: AttachmentExtractionFailed | None = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None

    def render(self) -> str:
        if self.ok:
            return f"Content from {self.filename}:\n{self.text}"
        return f"Note: Could not process {self.filename}"


def attachment_timeout_seconds() -> float:
    return get_float_env("ATTACHMENT_TIMEOUT_SECONDS", 30.0)


def _decode_text(content: bytes) -> str:
    try:
        return content.decode("utf-8")
    except UnicodeDecodeError:
        return content.decode("latin-1", errors="ignore")


def extract_attachment_text(attachment: Attachment) -> str:
    """Extract plain text from an attached document.

    Supports plain text, markdown, JSON, RTF (read as text), PDF via pypdf and
    DOCX via python-docx. Raises ``AttachmentExtractionFailed`` for unsupported
    types and for documents without readable text.
    """

    kind = (attachment.mime_type or "").lower().strip()
    extension = attachment.extension

    if kind == "application/pdf" or extension == ".pdf":
        try:
            reader = PdfReader(io.BytesIO(attachment.content))
            pages = [page.extract_text() or "" for page in reader.pages]
        except Exception as exc:
            raise AttachmentExtractionFailed(attachment.filename, "unable to read PDF") from exc
        text = "\n\n".join(page.strip() for page in pages if page and page.strip())
    elif kind == _DOCX_MIME or extension == ".docx":
        try:
            document = DocxDocument(io.BytesIO(attachment.content))
        except Exception as exc:
            raise AttachmentExtractionFailed(attachment.filename, "unable to read DOCX") from exc
        text = "\n".join(paragraph.text for paragraph in document.paragraphs if paragraph.text.strip())
    elif kind.startswith("text/") or kind in {"application/json", "application/rtf"} or extension in {
        ".txt",
        ".md",
        ".json",
        ".rtf",
    }:
        text = _decode_text(attachment.content)
    else:
        raise AttachmentExtractionFailed(attachment.filename, f"unsupported type {attachment.mime_type}")

    text = text.strip()
    if not text:
        raise AttachmentExtractionFailed(attachment.filename, "no readable text")
    return text


class RemoteExtractor:
    """Client for an external document-extraction service.

    Posts the raw bytes as multipart form data and expects ``{"text": ...}``
    back. Transport errors are retried with exponential backoff.
    """

    def __init__(
        self,
        base_url: str | None = None,
        *,
        api_key: str | None = None,
        max_attempts: int | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = (base_url or os.getenv("EXTRACTION_SERVICE_URL", "")).rstrip("/")
        self.api_key = api_key or os.getenv("EXTRACTION_SERVICE_API_KEY")
        self.max_attempts = max_attempts or get_int_env("EXTRACTION_MAX_ATTEMPTS", 3)
        self._client = client

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

    async def __call__(self, attachment: Attachment) -> str:
        if not self.base_url:
            raise AttachmentExtractionFailed(attachment.filename, "EXTRACTION_SERVICE_URL is not configured")
        client = self._client or httpx.AsyncClient(timeout=attachment_timeout_seconds())
        try:
            async for attempt in AsyncRetrying(
                wait=wait_exponential(multiplier=1, min=0.5, max=4),
                stop=stop_after_attempt(max(self.max_attempts, 1)),
                retry=retry_if_exception_type(httpx.TransportError),
                reraise=True,
            ):
                with attempt:
                    response = await client.post(
                        f"{self.base_url}/extract",
                        headers=self._headers(),
                        files={"file": (attachment.filename, attachment.content, attachment.mime_type)},
                    )
                    response.raise_for_status()
        except httpx.HTTPError as exc:
            raise AttachmentExtractionFailed(attachment.filename, str(exc)) from exc
        finally:
            if self._client is None:
                await client.aclose()
        text = str(response.json().get("text") or "").strip()
        if not text:
            raise AttachmentExtractionFailed(attachment.filename, "no readable text")
        return text


async def _run_extractor(extractor: Extractor, attachment: Attachment) -> str:
    if inspect.iscoroutinefunction(extractor) or inspect.iscoroutinefunction(getattr(extractor, "__call__", None)):
        return await extractor(attachment)  # type: ignore[misc]
    result = await asyncio.to_thread(extractor, attachment)
    if inspect.isawaitable(result):
        return await result
    return result


async def _resolve_one(extractor: Extractor, attachment: Attachment, timeout: float) -> ResolvedAttachment:
    try:
        text = await asyncio.wait_for(_run_extractor(extractor, attachment), timeout=timeout)
    except asyncio.TimeoutError:
        error = AttachmentExtractionFailed(attachment.filename, f"timed out after {timeout:.1f}s")
    except AttachmentExtractionFailed as exc:
        error = exc
    except Exception as exc:
        error = AttachmentExtractionFailed(attachment.filename, str(exc) or exc.__class__.__name__)
    else:
        return ResolvedAttachment(filename=attachment.filename, text=text, metadata={"length": len(text)})
    log.warning("attachment_extraction_failed", filename=attachment.filename, reason=error.reason)
    get_metrics().increment_counter("attachments::failed")
    return ResolvedAttachment(filename=attachment.filename, error=error)


async def resolve_attachments(
    attachments: Sequence[Attachment],
    extractor: Extractor | None = None,
    *,
    timeout: float | None = None,
) -> List[ResolvedAttachment]:
    """Extract every attachment concurrently; results keep submission order."""

    if not attachments:
        return []
    extractor = extractor if extractor is not None else extract_attachment_text
    limit = timeout if timeout is not None else attachment_timeout_seconds()
    results = await asyncio.gather(*(_resolve_one(extractor, item, limit) for item in attachments))
    get_metrics().increment_counter("attachments::resolved", float(len(results)))
    return list(results)


def format_attachment_context(resolved: Sequence[ResolvedAttachment]) -> str:
    return "\n\n".join(item.render() for item in resolved)
