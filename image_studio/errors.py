class StudioError(Exception):
    """Base class for every error raised by the studio."""


class ConfigurationError(StudioError):
    """Settings are missing or unusable. Fatal at startup."""


class ValidationError(StudioError):
    """A request or upload was rejected before any network call."""


class ModelServiceError(StudioError):
    """The remote model failed or declined to produce an image."""


class RequestFailedError(StudioError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RequestCancelledError(StudioError):
    """The caller's cancellation token fired before the request finished."""


def exception_to_message(exc: BaseException) -> str:
    if isinstance(exc, RequestCancelledError):
        return "Request cancelled."
    if isinstance(exc, StudioError):
        return exc.args[0] if exc.args else "An error occurred."
    return str(exc) if exc.args else "An unknown error occurred."
