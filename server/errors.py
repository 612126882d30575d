"""Error taxonomy for the sync server.

Every error carries the HTTP status it maps to; `api.py` renders them as
``{"error": <message>}``. Upstream platform errors are defined next to the
platform client in `shared.platform` and re-exported here.
"""

from shared.platform import UpstreamError, UpstreamRateLimited, UpstreamRejected


class SyncError(Exception):
    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class MissingField(SyncError):
    status_code = 400


class InvalidCredentials(SyncError):
    status_code = 401


class NotAuthorized(SyncError):
    status_code = 403


class InvalidIndex(SyncError):
    status_code = 400


class NotFound(SyncError):
    status_code = 404


def status_for_upstream(err: UpstreamError) -> int:
    return 429 if isinstance(err, UpstreamRateLimited) else 500


__all__ = [
    "SyncError",
    "MissingField",
    "InvalidCredentials",
    "NotAuthorized",
    "InvalidIndex",
    "NotFound",
    "UpstreamError",
    "UpstreamRateLimited",
    "UpstreamRejected",
    "status_for_upstream",
]
