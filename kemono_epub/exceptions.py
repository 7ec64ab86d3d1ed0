from typing import Optional


class KemonoEpubError(Exception):
    """Base error for kemono_epub.

    Per-post failures are reported through this hierarchy and skipped by the
    generator; the CLI prints these without a traceback.
    """


class FetchError(KemonoEpubError):
    """Network retrieval error for API pages, post details or assets."""

    def __init__(self, url: str, status: Optional[int] = None, reason: str = ""):
        self.url = url
        self.status = status
        detail = f"HTTP {status}" if status is not None else (reason or "request failed")
        super().__init__(f"{detail} for {url}")


class MalformedPostError(KemonoEpubError):
    """API payload that cannot be turned into a post (e.g. no id)."""


class EncodingError(KemonoEpubError):
    """Image bytes that cannot be decoded or re-encoded."""


class PackerStateError(KemonoEpubError, RuntimeError):
    """Archive packer used out of order. Always an integration bug."""


class DependencyUnavailableError(KemonoEpubError, RuntimeError):
    """A library required to build the archive is missing."""


class GenerationCancelled(KemonoEpubError):
    """The caller cancelled the run between two posts."""
