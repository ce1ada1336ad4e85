"""
Attachment Store — in-memory blob storage keyed by a monotonically
increasing id, plus the normalization policy for inbound attachment
descriptions.

Inbound descriptions are plain dicts, applied the same way whether they
arrive inline with a question or on their own:

    {"id": 3, "filename": "shown.png"}                → existing blob, display override
    {"content": "data:image/png;base64,iVBOR..."}     → decoded and stored
    {"b64": "aGVsbG8=", "mime": "text/plain"}         → decoded and stored
    {"url": "https://cdn.example.com/a/report.pdf"}   → external pass-through
"""
from __future__ import annotations

import base64
import itertools
import re
import structlog
from typing import Any, Optional

from broker.errors import NotFoundError, PartialDecodeError
from models.schemas import AttachmentMeta, AttachmentRef, StoredAttachment

logger = structlog.get_logger()

DEFAULT_FILENAME = "file"
DEFAULT_MIME = "application/octet-stream"

_DATA_URL_RE = re.compile(r"^data:([^;]+);base64,(.+)$", re.IGNORECASE | re.DOTALL)
_INLINE_KEYS = ("b64", "dataUrl", "content")
_NON_B64_RE = re.compile(r"[^A-Za-z0-9+/]")
_URLSAFE_TO_STD = str.maketrans("-_", "+/")


def _b64decode(payload: str) -> bytes:
    """
    Lenient base64: url-safe alphabet accepted, anything outside the
    alphabet skipped, decoding stops at the first ``=``, and a dangling
    final character (length 1 mod 4) carries no full byte and is dropped.
    """
    cleaned = _NON_B64_RE.sub("", payload.split("=", 1)[0].translate(_URLSAFE_TO_STD))
    if len(cleaned) % 4 == 1:
        cleaned = cleaned[:-1]
    data = base64.b64decode(cleaned + "=" * (-len(cleaned) % 4))
    if not data:
        raise PartialDecodeError("No decodable base64 content")
    return data


def decode_content(content: str, mime: Optional[str] = None) -> tuple[bytes, str]:
    """
    Decode a raw base64 string or a ``data:<mime>;base64,<payload>`` URI.

    The data-URI mime wins, then the explicit ``mime``, then octet-stream.
    """
    if content.startswith("data:"):
        match = _DATA_URL_RE.match(content)
        if not match:
            raise PartialDecodeError("Malformed data URL")
        data_mime, payload = match.groups()
        return _b64decode(payload), data_mime or mime or DEFAULT_MIME
    return _b64decode(content), mime or DEFAULT_MIME


def filename_from_url(url: str) -> str:
    last = url.split("/")[-1]
    return last.split("?")[0].split("#")[0] or DEFAULT_FILENAME


class AttachmentStore:
    """
    Owns every stored attachment for the lifetime of the process.

    Mutations never await, so on a single event loop each one is atomic.
    """

    def __init__(self, url_prefix: str = "/v1/attachments"):
        self.url_prefix = url_prefix.rstrip("/")
        self._blobs: dict[int, StoredAttachment] = {}
        self._ids = itertools.count(1)

    def __len__(self) -> int:
        return len(self._blobs)

    def url_for(self, attachment_id: int) -> str:
        return f"{self.url_prefix}/{attachment_id}"

    # ── Storage ───────────────────────────────────────────────

    def store(self, filename: Optional[str], mime: Optional[str], content: bytes) -> AttachmentRef:
        attachment_id = next(self._ids)
        blob = StoredAttachment(
            id=attachment_id,
            filename=filename or DEFAULT_FILENAME,
            mime=mime or DEFAULT_MIME,
            size=len(content),
            content=content,
        )
        self._blobs[attachment_id] = blob
        logger.info("attachment_stored",
                    attachment_id=attachment_id,
                    filename=blob.filename,
                    mime=blob.mime,
                    size=blob.size)
        return AttachmentRef(
            id=blob.id,
            filename=blob.filename,
            mime=blob.mime,
            size=blob.size,
            url=self.url_for(blob.id),
        )

    def fetch(self, attachment_id: int) -> StoredAttachment:
        blob = self._blobs.get(attachment_id)
        if blob is None:
            raise NotFoundError("Attachment not found")
        return blob

    def describe(
        self,
        attachment_id: int,
        filename: Optional[str] = None,
        mime: Optional[str] = None,
    ) -> Optional[AttachmentRef]:
        """Descriptor for a stored blob, with optional display overrides."""
        blob = self._blobs.get(attachment_id)
        if blob is None:
            return None
        return AttachmentRef(
            id=blob.id,
            filename=filename or blob.filename,
            mime=mime or blob.mime,
            size=blob.size,
            url=self.url_for(blob.id),
        )

    def list_meta(self) -> list[AttachmentMeta]:
        return [blob.meta() for blob in self._blobs.values()]

    # ── Normalization ─────────────────────────────────────────

    def normalize(self, description: Any) -> Optional[AttachmentRef]:
        """
        Resolve one inbound attachment description.

        Order: known id → inline content → external url → nothing.
        Returns None for anything that resolves to nothing.
        """
        if not isinstance(description, dict) or not description:
            return None

        filename = _str_or_none(description.get("filename"))
        mime = _str_or_none(description.get("mime"))

        resolved = self._resolve_id(description.get("id"), filename, mime)
        if resolved is not None:
            return resolved

        inline = next(
            (description[k] for k in _INLINE_KEYS
             if isinstance(description.get(k), str) and description[k]),
            None,
        )
        if inline is not None:
            try:
                content, parsed_mime = decode_content(inline, mime)
            except PartialDecodeError as e:
                logger.warning("attachment_decode_failed",
                               filename=filename,
                               error=e.message)
            else:
                return self.store(filename, parsed_mime, content)

        url = _str_or_none(description.get("url"))
        if url:
            return AttachmentRef(
                filename=filename or filename_from_url(url),
                mime=mime or DEFAULT_MIME,
                url=url,
            )

        return None

    def normalize_many(self, descriptions: Any) -> list[AttachmentRef]:
        """Normalize a list of descriptions, dropping the ones that resolve to nothing."""
        if not isinstance(descriptions, list):
            return []

        refs = []
        for position, description in enumerate(descriptions):
            ref = self.normalize(description)
            if ref is None:
                logger.warning("attachment_dropped", position=position)
                continue
            refs.append(ref)
        return refs

    def _resolve_id(self, raw_id: Any, filename: Optional[str], mime: Optional[str]) -> Optional[AttachmentRef]:
        if raw_id is None or isinstance(raw_id, bool):
            return None
        try:
            attachment_id = int(raw_id)
        except (TypeError, ValueError):
            return None
        return self.describe(attachment_id, filename, mime)


def _str_or_none(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None
