class ServiceError(Exception):
    """Base error carrying the HTTP status and the message shown to clients.

    The constructor argument is detail for server-side logs only; clients
    always receive the class-level ``message``.
    """

    status_code = 500
    message = "Internal error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.message)


class AuthError(ServiceError):
    status_code = 403
    message = "Forbidden: invalid or missing token"


class BadRequestError(ServiceError):
    status_code = 400
    message = 'Expected multipart/form-data with a "pdf" file part'


class NotFoundError(ServiceError):
    status_code = 404
    message = "The file is no longer available"


class MethodError(ServiceError):
    status_code = 405
    message = "Method not allowed"


class UploadTooLargeError(ServiceError):
    status_code = 413
    message = "Upload too large"


class UnsupportedMediaError(ServiceError):
    status_code = 415
    message = "Unsupported media type"


class ConversionError(ServiceError):
    # Always rendered with the generic message; the cause is only logged.
    status_code = 500
    message = "Error processing the file"


class DuplicateArtifactError(ValueError):
    """Raised when an artifact id is registered twice."""
