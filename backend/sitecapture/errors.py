"""Error taxonomy shared by the HTTP layer, the service and the poller."""


class CaptureServiceError(Exception):
    """Base class. `status_code` is the HTTP status the API answers with."""

    status_code = 500

    def __init__(self, message: str, detail: str | None = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class InvalidURLError(CaptureServiceError):
    status_code = 400


class BrowserLaunchError(CaptureServiceError):
    status_code = 503


class SessionNotFoundError(CaptureServiceError):
    status_code = 404

    def __init__(self, session_id: str):
        super().__init__(
            "Session not found",
            f"Session {session_id} does not exist or has expired",
        )
        self.session_id = session_id

    @classmethod
    def for_file(cls, session_id: str, filename: str) -> "SessionNotFoundError":
        err = cls(session_id)
        err.message = "Screenshot not found"
        err.detail = f"No screenshot named {filename} in session {session_id}"
        return err


class JobNotReadyError(CaptureServiceError):
    status_code = 425  # Too Early


class JobFailedError(CaptureServiceError):
    status_code = 409


class EmptyArchiveError(CaptureServiceError):
    status_code = 422


class TransientQueryError(CaptureServiceError):
    """A status query failed for a reason worth retrying (network, 5xx)."""

    status_code = 503
