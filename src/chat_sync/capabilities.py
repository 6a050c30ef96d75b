"""Model capability checks and file-type classification for attachments."""

from __future__ import annotations

from enum import Enum
from pathlib import PurePath

from .models import ModelDescriptor

# Large-context models are assumed to accept PDF input.
PDF_CONTEXT_THRESHOLD = 100_000

IMAGE_MIME_TYPES: frozenset[str] = frozenset(
    {
        "image/png",
        "image/jpeg",
        "image/jpg",
        "image/gif",
        "image/webp",
        "image/heic",
        "image/heif",
    }
)

TEXT_MIME_TYPES: frozenset[str] = frozenset(
    {
        "text/plain",
        "text/markdown",
        "text/csv",
        "text/html",
        "text/css",
        "text/javascript",
        "text/typescript",
        "application/json",
        "application/xml",
        "text/xml",
        "application/yaml",
        "text/x-python",
        "text/x-java",
        "text/x-c",
        "text/x-cpp",
        "text/x-csharp",
        "text/x-go",
        "text/x-rust",
        "text/x-php",
        "text/x-ruby",
        "text/x-swift",
        "text/x-kotlin",
        "text/x-scala",
        "text/x-shell",
        "text/x-sql",
        "text/x-dockerfile",
        "text/x-makefile",
        "text/x-properties",
        "text/x-log",
    }
)

# MIME types that may carry text even though they do not say so.
_TEXT_LIKE_MIME_TYPES: frozenset[str] = frozenset(
    {"", "application/json", "application/xml", "application/yaml", "application/octet-stream"}
)

PDF_MIME_TYPE = "application/pdf"

# Fence language for text attachments, keyed by file extension.
EXTENSION_LANGUAGES: dict[str, str] = {
    ".py": "python",
    ".js": "javascript",
    ".jsx": "jsx",
    ".ts": "typescript",
    ".tsx": "tsx",
    ".json": "json",
    ".md": "markdown",
    ".html": "html",
    ".css": "css",
    ".xml": "xml",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".toml": "toml",
    ".sh": "bash",
    ".sql": "sql",
    ".go": "go",
    ".rs": "rust",
    ".java": "java",
    ".c": "c",
    ".h": "c",
    ".cpp": "cpp",
    ".cs": "csharp",
    ".rb": "ruby",
    ".php": "php",
    ".swift": "swift",
    ".kt": "kotlin",
    ".scala": "scala",
    ".csv": "csv",
}


class FileCategory(str, Enum):
    """How an uploaded file is handled, if at all."""

    IMAGE = "image"
    PDF = "pdf"
    TEXT = "text"
    UNSUPPORTED = "unsupported"


def supports_images(model: ModelDescriptor | None) -> bool:
    return model is not None and model.supports_images


def supports_pdf(model: ModelDescriptor | None) -> bool:
    """Return True when the model can take PDF input.

    A declared ``file`` modality wins; otherwise a large context window is
    taken as evidence of PDF support.
    """
    if model is None:
        return False
    if model.supports_files:
        return True
    return bool(model.context_length and model.context_length >= PDF_CONTEXT_THRESHOLD)


def classify_file_type(mime_type: str, model: ModelDescriptor | None) -> FileCategory:
    """Classify a MIME type against the capabilities of ``model``."""
    normalized = (mime_type or "").strip().lower()
    if normalized in IMAGE_MIME_TYPES and supports_images(model):
        return FileCategory.IMAGE
    if normalized == PDF_MIME_TYPE and supports_pdf(model):
        return FileCategory.PDF
    if normalized in TEXT_MIME_TYPES:
        return FileCategory.TEXT
    if normalized.startswith("text/") or normalized in _TEXT_LIKE_MIME_TYPES:
        return FileCategory.TEXT
    return FileCategory.UNSUPPORTED


def language_for_filename(name: str) -> str:
    """Return the code-fence language for ``name``, or ``text``."""
    return EXTENSION_LANGUAGES.get(PurePath(name).suffix.lower(), "text")
