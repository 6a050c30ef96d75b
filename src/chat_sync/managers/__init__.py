"""Managers owning one engine concern each.

- AttachmentPipeline: file classification, re-encoding, and upload
- ResumeCoordinator: exactly-once recovery of interrupted generations
"""

from __future__ import annotations

from .attachment import (
    AttachmentMode,
    AttachmentPipeline,
    AttachmentRejection,
    PrepareResult,
    RawFile,
    RejectionReason,
    build_message_content,
)
from .resume import ResumeCoordinator, needs_resume

__all__ = [
    "AttachmentPipeline",
    "AttachmentMode",
    "AttachmentRejection",
    "PrepareResult",
    "RawFile",
    "RejectionReason",
    "build_message_content",
    "ResumeCoordinator",
    "needs_resume",
]
