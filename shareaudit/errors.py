class ShareAuditError(Exception):
    """Base for errors surfaced through the HTTP error envelope."""

    status_code = 500
    code = "error"
    default_message = "request failed"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class InvalidDuration(ShareAuditError):
    status_code = 400
    code = "bad_request"
    default_message = "invalid duration"

    def __init__(self, days, minimum: int, maximum: int):
        self.days = days
        self.minimum = minimum
        self.maximum = maximum
        super().__init__(f"expires_in_days must be an integer between {minimum} and {maximum}, got {days!r}")


class InvalidAuditEntry(ShareAuditError):
    status_code = 400
    code = "bad_request"
    default_message = "invalid audit entry"


class ResourceNotFound(ShareAuditError):
    status_code = 404
    code = "not_found"
    default_message = "file not found"


class TokenNotFound(ShareAuditError):
    status_code = 404
    code = "not_found"
    default_message = "shared link not found"


class LinkNotFound(TokenNotFound):
    pass


class Forbidden(ShareAuditError):
    status_code = 403
    code = "forbidden"
    default_message = "forbidden"


class DownloadNotAllowed(Forbidden):
    default_message = "downloads are disabled for this link"


class PasswordRequired(ShareAuditError):
    status_code = 401
    code = "password_required"
    default_message = "password required"


class LinkExpired(ShareAuditError):
    status_code = 410
    code = "expired"
    default_message = "this link has expired and is no longer available"


class LinkRevoked(ShareAuditError):
    status_code = 410
    code = "revoked"
    default_message = "this link was revoked and is no longer available"


class TokenCollision(ShareAuditError):
    """A freshly drawn token already exists. Retried by the issuer, never surfaced."""

    default_message = "token collision"


class TokenIssuanceFailed(ShareAuditError):
    status_code = 500
    code = "server_error"
    default_message = "could not issue a unique share token"


class StorageUnavailable(ShareAuditError):
    status_code = 503
    code = "storage_unavailable"
    default_message = "storage is temporarily unavailable"
