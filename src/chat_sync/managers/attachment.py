"""Attachment preparation and mode-aware materialization.

``prepare`` turns user-selected files into attachment records, rejecting
files per-file with a structured reason. ``materialize`` decides, per
conversation mode, whether content is inlined as a ``data:`` URI or
uploaded to durable storage.
"""

from __future__ import annotations

import asyncio
import base64
from dataclasses import dataclass, field
from enum import Enum
import io
import logging
from pathlib import Path

from PIL import Image, UnidentifiedImageError

from ..capabilities import FileCategory, classify_file_type, language_for_filename
from ..config import EngineSettings
from ..exceptions import UploadFailedError
from ..interfaces import FileUploader
from ..models import Attachment, ModelDescriptor

LOGGER = logging.getLogger(__name__)

WEBP_MIME_TYPE = "image/webp"
THUMBNAIL_DIMENSION = 256


class RejectionReason(str, Enum):
    NO_MODEL = "no_model"
    TOO_LARGE = "too_large"
    UNSUPPORTED_TYPE = "unsupported_type"
    READ_FAILED = "read_failed"


class AttachmentMode(str, Enum):
    """Where attachment content lives once a message is written."""

    INLINE = "inline"
    DURABLE = "durable"


@dataclass
class RawFile:
    """A user-selected file before classification.

    Either ``data`` or ``path`` supplies the bytes. ``size`` defaults to
    the length of ``data`` or the on-disk size of ``path``.
    """

    name: str
    mime_type: str = ""
    data: bytes | None = None
    path: Path | None = None
    size: int | None = None

    def byte_size(self) -> int:
        if self.size is not None:
            return self.size
        if self.data is not None:
            return len(self.data)
        if self.path is not None:
            return self.path.stat().st_size
        return 0

    def read(self) -> bytes:
        if self.data is not None:
            return self.data
        if self.path is not None:
            return self.path.read_bytes()
        raise OSError(f"No content available for {self.name}")


@dataclass(frozen=True)
class AttachmentRejection:
    name: str
    reason: RejectionReason
    message: str


@dataclass
class PrepareResult:
    attachments: list[Attachment] = field(default_factory=list)
    rejections: list[AttachmentRejection] = field(default_factory=list)

    @property
    def has_rejections(self) -> bool:
        return bool(self.rejections)


def _format_megabytes(num_bytes: int) -> str:
    return f"{num_bytes / (1024 * 1024):.0f}MB"


def reencode_image(data: bytes, max_dimension: int, quality: int) -> tuple[str, str]:
    """Downscale to ``max_dimension`` and encode as WebP; return (base64, thumbnail_base64)."""
    with Image.open(io.BytesIO(data)) as source:
        image = source.convert("RGBA" if "A" in source.getbands() else "RGB")
    image.thumbnail((max_dimension, max_dimension))
    buffer = io.BytesIO()
    image.save(buffer, format="WEBP", quality=quality)

    image.thumbnail((THUMBNAIL_DIMENSION, THUMBNAIL_DIMENSION))
    thumb_buffer = io.BytesIO()
    image.save(thumb_buffer, format="WEBP", quality=quality)
    return (
        base64.b64encode(buffer.getvalue()).decode("ascii"),
        base64.b64encode(thumb_buffer.getvalue()).decode("ascii"),
    )


class AttachmentPipeline:
    """Classify, read, and store attachments for the currently selected model."""

    def __init__(
        self,
        settings: EngineSettings | None = None,
        uploader: FileUploader | None = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.uploader = uploader

    def ceiling_for(self, mime_type: str) -> int:
        if (mime_type or "").lower() == "application/pdf":
            return self.settings.max_pdf_bytes
        return self.settings.max_file_bytes

    async def prepare(
        self, raw_files: list[RawFile], model: ModelDescriptor | None
    ) -> PrepareResult:
        """Convert ``raw_files`` into attachments, rejecting each bad file independently."""
        result = PrepareResult()
        for raw in raw_files:
            outcome = await self._prepare_one(raw, model)
            if isinstance(outcome, AttachmentRejection):
                LOGGER.info(
                    "attachment.rejected",
                    extra={
                        "event": "attachment.rejected",
                        "name": outcome.name,
                        "reason": outcome.reason.value,
                    },
                )
                result.rejections.append(outcome)
            else:
                result.attachments.append(outcome)
        return result

    async def _prepare_one(
        self, raw: RawFile, model: ModelDescriptor | None
    ) -> Attachment | AttachmentRejection:
        if model is None or not model.is_fully_described:
            return AttachmentRejection(
                raw.name, RejectionReason.NO_MODEL, "Select a model before attaching files."
            )

        try:
            size = raw.byte_size()
        except OSError as exc:
            return AttachmentRejection(raw.name, RejectionReason.READ_FAILED, str(exc))

        ceiling = self.ceiling_for(raw.mime_type)
        if size > ceiling:
            return AttachmentRejection(
                raw.name,
                RejectionReason.TOO_LARGE,
                f"{raw.name} exceeds the {_format_megabytes(ceiling)} limit.",
            )

        category = classify_file_type(raw.mime_type, model)
        if category is FileCategory.UNSUPPORTED:
            return AttachmentRejection(
                raw.name,
                RejectionReason.UNSUPPORTED_TYPE,
                f"{raw.mime_type or 'This file type'} is not supported by {model.name or model.model_id}.",
            )

        try:
            data = await asyncio.to_thread(raw.read)
        except OSError as exc:
            return AttachmentRejection(raw.name, RejectionReason.READ_FAILED, str(exc))

        if category is FileCategory.TEXT:
            try:
                text = data.decode("utf-8")
            except UnicodeDecodeError:
                return AttachmentRejection(
                    raw.name, RejectionReason.READ_FAILED, f"{raw.name} is not valid UTF-8 text."
                )
            return Attachment(
                type="text",
                name=raw.name,
                size=size,
                content=text,
                mime_type=raw.mime_type or "text/plain",
            )

        if category is FileCategory.PDF:
            return Attachment(
                type="pdf",
                name=raw.name,
                size=size,
                content=base64.b64encode(data).decode("ascii"),
                mime_type="application/pdf",
            )

        return await self._prepare_image(raw, data, size)

    async def _prepare_image(self, raw: RawFile, data: bytes, size: int) -> Attachment:
        try:
            encoded, thumbnail = await asyncio.to_thread(
                reencode_image,
                data,
                self.settings.max_image_dimension,
                self.settings.image_quality,
            )
        except (UnidentifiedImageError, OSError, ValueError) as exc:
            LOGGER.warning(
                "attachment.image.reencode_failed",
                extra={
                    "event": "attachment.image.reencode_failed",
                    "name": raw.name,
                    "error": str(exc),
                },
            )
            return Attachment(
                type="image",
                name=raw.name,
                size=size,
                content=base64.b64encode(data).decode("ascii"),
                mime_type=raw.mime_type,
            )
        return Attachment(
            type="image",
            name=raw.name,
            size=size,
            content=encoded,
            mime_type=WEBP_MIME_TYPE,
            thumbnail=f"data:{WEBP_MIME_TYPE};base64,{thumbnail}",
        )

    async def materialize(
        self, attachments: list[Attachment], mode: AttachmentMode
    ) -> list[Attachment]:
        """Rewrite attachments for the write path of ``mode``.

        Text and already-durable attachments pass through unchanged. In
        durable mode a failed upload of a file larger than the fatal
        threshold raises ``UploadFailedError``; smaller files keep their
        inline content.
        """
        if mode is AttachmentMode.INLINE:
            return [self._inline(attachment) for attachment in attachments]

        uploader = self.uploader
        if uploader is None:
            raise ValueError("Durable attachment mode requires a file uploader.")

        materialized: list[Attachment] = []
        for attachment in attachments:
            if attachment.type == "text" or attachment.is_durable or not attachment.content:
                materialized.append(attachment)
                continue
            materialized.append(await self._upload(uploader, attachment))
        return materialized

    @staticmethod
    def _inline(attachment: Attachment) -> Attachment:
        if attachment.type == "text" or not attachment.has_inline_content:
            return attachment
        return attachment.model_copy(update={"url": attachment.data_uri()})

    async def _upload(self, uploader: FileUploader, attachment: Attachment) -> Attachment:
        try:
            stored = await uploader.upload(attachment)
        except Exception as exc:  # noqa: BLE001 - uploader failures are classified by size.
            fatal = attachment.size > self.settings.upload_fatal_threshold_bytes
            LOGGER.warning(
                "attachment.upload.failed",
                extra={
                    "event": "attachment.upload.failed",
                    "name": attachment.name,
                    "size": attachment.size,
                    "fatal": fatal,
                    "error": str(exc),
                },
            )
            if fatal:
                raise UploadFailedError(
                    f"Failed to upload {attachment.name}.", name=attachment.name, fatal=True
                ) from exc
            return attachment

        updates: dict[str, object] = {"content": None}
        if attachment.type == "pdf" and attachment.extracted_text and not stored.extracted_text:
            updates["extracted_text"] = attachment.extracted_text
        return stored.model_copy(update=updates)


def build_message_content(text: str, attachments: list[Attachment]) -> str:
    """Fold text attachments into the message body as fenced code blocks."""
    blocks = [text] if text.strip() else []
    for attachment in attachments:
        if attachment.type != "text" or not attachment.content:
            continue
        language = language_for_filename(attachment.name)
        blocks.append(
            f"--- Content from {attachment.name} ---\n```{language}\n{attachment.content}\n```"
        )
    return "\n\n".join(blocks)
