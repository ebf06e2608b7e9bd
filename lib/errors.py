"""
Error taxonomy for the import pipeline.

Every error carries a short user-facing message (``str(e)``), a stable
``code`` for API clients, and a ``meta`` dict with diagnostics that is
logged but only returned to clients in development mode.
"""
from __future__ import annotations

from typing import Any, Dict

SNIPPET_MAX_CHARS = 300


def truncate_snippet(text: str | bytes | None, limit: int = SNIPPET_MAX_CHARS) -> str:
    if text is None:
        return ""
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    text = text.strip()
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


class PipelineError(Exception):
    code = "pipeline_error"
    status_code = 500

    def __init__(self, message: str, meta: Dict[str, Any] | None = None):
        super().__init__(message)
        self.meta = meta or {}


class UnrecognizedLinkError(PipelineError):
    """Input matched no platform/content pattern."""

    code = "unrecognized_link"
    status_code = 400

    def __init__(self, raw_input: str, meta: Dict[str, Any] | None = None):
        super().__init__(
            "Could not recognize this link. Paste a full song, album or playlist link.",
            meta={"raw_input": raw_input, **(meta or {})},
        )


class UnsupportedContentTypeError(PipelineError):
    code = "unsupported_content_type"
    status_code = 400

    def __init__(self, platform: str, content_type: str):
        super().__init__(
            f"{content_type.capitalize()} links are not supported for {platform} yet.",
            meta={"platform": platform, "content_type": content_type},
        )
        self.platform = platform
        self.content_type = content_type


class NotConfiguredError(PipelineError):
    code = "not_configured"
    status_code = 503

    def __init__(self, setting: str, hint: str | None = None):
        message = f"{setting} is not configured."
        if hint:
            message = f"{message} {hint}"
        super().__init__(message, meta={"setting": setting})
        self.setting = setting


class UpstreamError(PipelineError):
    status_code = 502

    def __init__(
        self,
        message: str,
        platform: str | None = None,
        snippet: str | bytes | None = None,
        meta: Dict[str, Any] | None = None,
    ):
        self.platform = platform
        self.snippet = truncate_snippet(snippet)
        merged = dict(meta or {})
        if platform:
            merged.setdefault("platform", platform)
        if self.snippet:
            merged.setdefault("snippet", self.snippet)
        super().__init__(message, meta=merged)


class UpstreamFormatError(UpstreamError):
    """Upstream answered but no extraction strategy recognized the payload."""

    code = "upstream_format"


class UpstreamUnavailableError(UpstreamError):
    """Timeout, connection failure or non-2xx status."""

    code = "upstream_unavailable"


class StorageError(PipelineError):
    code = "storage_error"


class StorageTransientError(StorageError):
    code = "storage_transient"
    status_code = 503


class StorageFatalError(StorageError):
    code = "storage_fatal"
    status_code = 500


class NotFoundError(PipelineError):
    code = "not_found"
    status_code = 404


class InvalidInputError(PipelineError):
    """A required parameter is blank or malformed."""

    code = "invalid_input"
    status_code = 400
