"""Tests for attachment classification, re-encoding, and mode-aware materialization."""

from __future__ import annotations

import base64
import io
from pathlib import Path
import tempfile
import unittest

from PIL import Image

from chat_sync.capabilities import FileCategory, classify_file_type
from chat_sync.config import EngineSettings
from chat_sync.exceptions import UploadFailedError
from chat_sync.managers.attachment import (
    AttachmentMode,
    AttachmentPipeline,
    RawFile,
    RejectionReason,
    build_message_content,
)
from chat_sync.models import Attachment, ModelDescriptor

MB = 1024 * 1024

VISION_MODEL = ModelDescriptor(
    model_id="llava",
    provider="ollama",
    input_modalities=["text", "image", "file"],
)
TEXT_MODEL = ModelDescriptor(model_id="llama3.2", provider="ollama", context_length=8192)


def _png_bytes(width: int, height: int) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color=(200, 20, 20)).save(buffer, format="PNG")
    return buffer.getvalue()


class FakeUploader:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.uploaded: list[str] = []

    async def upload(self, attachment: Attachment) -> Attachment:
        self.uploaded.append(attachment.name)
        if self.fail:
            raise RuntimeError("storage offline")
        return attachment.model_copy(
            update={"storage_id": f"storage-{attachment.name}", "url": "https://files/x"}
        )


class ClassificationTests(unittest.TestCase):
    def test_images_need_a_vision_model(self) -> None:
        self.assertIs(classify_file_type("image/png", VISION_MODEL), FileCategory.IMAGE)
        self.assertIs(classify_file_type("image/png", TEXT_MODEL), FileCategory.UNSUPPORTED)

    def test_pdf_accepted_by_file_modality_or_large_context(self) -> None:
        large = ModelDescriptor(model_id="big", provider="p", context_length=128_000)
        self.assertIs(classify_file_type("application/pdf", VISION_MODEL), FileCategory.PDF)
        self.assertIs(classify_file_type("application/pdf", large), FileCategory.PDF)
        self.assertIs(
            classify_file_type("application/pdf", TEXT_MODEL), FileCategory.UNSUPPORTED
        )

    def test_text_like_types_are_always_text(self) -> None:
        for mime in ("text/plain", "text/x-anything", "application/json", "", "application/octet-stream"):
            self.assertIs(classify_file_type(mime, TEXT_MODEL), FileCategory.TEXT)
        self.assertIs(classify_file_type("application/zip", TEXT_MODEL), FileCategory.UNSUPPORTED)


class PrepareTests(unittest.IsolatedAsyncioTestCase):
    """Validate per-file rejections and classification on prepare."""

    async def test_oversized_generic_file_rejected_and_large_pdf_accepted(self) -> None:
        pipeline = AttachmentPipeline(EngineSettings(), uploader=FakeUploader())
        result = await pipeline.prepare(
            [
                RawFile(name="big.txt", mime_type="text/plain", data=b"a" * (6 * MB)),
                RawFile(name="doc.pdf", mime_type="application/pdf", data=b"%PDF" * (2 * MB)),
            ],
            VISION_MODEL,
        )

        self.assertEqual(len(result.rejections), 1)
        self.assertEqual(result.rejections[0].name, "big.txt")
        self.assertIs(result.rejections[0].reason, RejectionReason.TOO_LARGE)
        self.assertEqual([a.name for a in result.attachments], ["doc.pdf"])
        self.assertEqual(result.attachments[0].type, "pdf")
        self.assertIsNone(result.attachments[0].extracted_text)

    async def test_size_is_checked_before_reading(self) -> None:
        pipeline = AttachmentPipeline()
        missing = RawFile(
            name="huge.bin",
            mime_type="application/octet-stream",
            path=Path("/nonexistent/huge.bin"),
            size=50 * MB,
        )
        result = await pipeline.prepare([missing], VISION_MODEL)
        self.assertIs(result.rejections[0].reason, RejectionReason.TOO_LARGE)

    async def test_no_model_rejects_every_file(self) -> None:
        pipeline = AttachmentPipeline()
        result = await pipeline.prepare(
            [RawFile(name="a.txt", data=b"a"), RawFile(name="b.txt", data=b"b")], None
        )
        self.assertEqual(
            [r.reason for r in result.rejections],
            [RejectionReason.NO_MODEL, RejectionReason.NO_MODEL],
        )
        self.assertEqual(result.attachments, [])

    async def test_unsupported_type_does_not_stop_other_files(self) -> None:
        pipeline = AttachmentPipeline()
        result = await pipeline.prepare(
            [
                RawFile(name="photo.png", mime_type="image/png", data=_png_bytes(4, 4)),
                RawFile(name="notes.md", mime_type="text/markdown", data=b"# hi"),
            ],
            TEXT_MODEL,
        )
        self.assertIs(result.rejections[0].reason, RejectionReason.UNSUPPORTED_TYPE)
        self.assertEqual(result.attachments[0].content, "# hi")
        self.assertEqual(result.attachments[0].type, "text")

    async def test_unreadable_file_reports_read_failed(self) -> None:
        pipeline = AttachmentPipeline()
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "gone.txt"
            path.write_text("soon gone", encoding="utf-8")
            raw = RawFile(name="gone.txt", mime_type="text/plain", path=path, size=9)
            path.unlink()
            result = await pipeline.prepare([raw], TEXT_MODEL)
        self.assertIs(result.rejections[0].reason, RejectionReason.READ_FAILED)

    async def test_image_is_downscaled_to_webp(self) -> None:
        pipeline = AttachmentPipeline()
        result = await pipeline.prepare(
            [RawFile(name="wide.png", mime_type="image/png", data=_png_bytes(2048, 1024))],
            VISION_MODEL,
        )
        attachment = result.attachments[0]
        self.assertEqual(attachment.mime_type, "image/webp")
        decoded = Image.open(io.BytesIO(base64.b64decode(attachment.content)))
        self.assertEqual(decoded.format, "WEBP")
        self.assertLessEqual(max(decoded.size), 1024)
        self.assertTrue(attachment.thumbnail.startswith("data:image/webp;base64,"))

    async def test_undecodable_image_falls_back_to_raw_base64(self) -> None:
        pipeline = AttachmentPipeline()
        raw_bytes = b"not really a png"
        result = await pipeline.prepare(
            [RawFile(name="broken.png", mime_type="image/png", data=raw_bytes)],
            VISION_MODEL,
        )
        attachment = result.attachments[0]
        self.assertEqual(attachment.type, "image")
        self.assertEqual(attachment.mime_type, "image/png")
        self.assertEqual(base64.b64decode(attachment.content), raw_bytes)


class MaterializeTests(unittest.IsolatedAsyncioTestCase):
    """Validate inline versus durable handling."""

    def _image(self, size: int = 10) -> Attachment:
        return Attachment(type="image", name="p.webp", size=size, content="QUJD", mime_type="image/webp")

    async def test_inline_mode_builds_data_uri_and_never_uploads(self) -> None:
        uploader = FakeUploader()
        pipeline = AttachmentPipeline(uploader=uploader)
        text = Attachment(type="text", name="a.txt", size=1, content="hi")
        result = await pipeline.materialize([self._image(), text], AttachmentMode.INLINE)

        self.assertEqual(result[0].url, "data:image/webp;base64,QUJD")
        self.assertIs(result[1], text)
        self.assertEqual(uploader.uploaded, [])

    async def test_durable_mode_uploads_binary_and_keeps_pdf_text(self) -> None:
        uploader = FakeUploader()
        pipeline = AttachmentPipeline(uploader=uploader)
        pdf = Attachment(
            type="pdf",
            name="d.pdf",
            size=10,
            content="JVBERi0=",
            mime_type="application/pdf",
            extracted_text="page one",
        )
        stored = Attachment(type="image", name="s.png", size=1, storage_id="existing")
        text = Attachment(type="text", name="a.txt", size=1, content="hi")
        result = await pipeline.materialize(
            [self._image(), pdf, stored, text], AttachmentMode.DURABLE
        )

        self.assertEqual(uploader.uploaded, ["p.webp", "d.pdf"])
        self.assertEqual(result[0].storage_id, "storage-p.webp")
        self.assertIsNone(result[0].content)
        self.assertEqual(result[1].extracted_text, "page one")
        self.assertIs(result[2], stored)
        self.assertIs(result[3], text)

    async def test_durable_mode_requires_an_uploader(self) -> None:
        pipeline = AttachmentPipeline()
        with self.assertRaises(ValueError):
            await pipeline.materialize([self._image()], AttachmentMode.DURABLE)

    async def test_small_upload_failure_falls_back_to_inline(self) -> None:
        pipeline = AttachmentPipeline(uploader=FakeUploader(fail=True))
        original = self._image(size=1024)
        result = await pipeline.materialize([original], AttachmentMode.DURABLE)
        self.assertIs(result[0], original)

    async def test_large_upload_failure_is_fatal(self) -> None:
        pipeline = AttachmentPipeline(uploader=FakeUploader(fail=True))
        with self.assertRaises(UploadFailedError) as ctx:
            await pipeline.materialize([self._image(size=2 * MB)], AttachmentMode.DURABLE)
        self.assertTrue(ctx.exception.fatal)
        self.assertEqual(ctx.exception.name, "p.webp")


class BuildMessageContentTests(unittest.TestCase):
    def test_text_attachments_become_fenced_blocks(self) -> None:
        content = build_message_content(
            "Review this",
            [
                Attachment(type="text", name="main.py", size=5, content="x = 1"),
                Attachment(type="image", name="p.png", size=5, content="QUJD"),
            ],
        )
        self.assertEqual(
            content,
            "Review this\n\n--- Content from main.py ---\n```python\nx = 1\n```",
        )


if __name__ == "__main__":
    unittest.main()
