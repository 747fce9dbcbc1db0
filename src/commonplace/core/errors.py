"""Error taxonomy shared by every layer of the highlight graph.

Why this exists:
- Callers (CLI, API layers) map errors to outcomes without knowing which
  component raised them
- Validation and not-found errors are caller mistakes (4xx-equivalent)
- Conflicts and upstream failures are server-side (5xx-equivalent)

ProjectionDegenerateError never leaves the layout module: it triggers the
fallback layout instead.
"""

from typing import Optional


class CommonplaceError(Exception):
    """Base exception for all highlight graph errors."""

    status_code: int = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)

    @property
    def is_client_error(self) -> bool:
        """True when the caller sent something that cannot succeed as-is."""
        return 400 <= self.status_code < 500


class ValidationError(CommonplaceError):
    """Malformed input: missing fields, self-join, wrong vector dimension, bad k."""

    status_code = 400


class NotFoundError(CommonplaceError):
    """An entry id did not resolve."""

    status_code = 404

    def __init__(self, message: str, entry_id: Optional[object] = None):
        self.entry_id = entry_id
        super().__init__(message)


class ConflictError(CommonplaceError):
    """A concurrent update race ran out of retries."""

    status_code = 503


class UpstreamError(CommonplaceError):
    """The embedding provider or the storage backend failed."""

    status_code = 502

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        self.original_error = original_error
        super().__init__(message)


class ProjectionDegenerateError(CommonplaceError):
    """The manifold layout could not produce finite coordinates."""
