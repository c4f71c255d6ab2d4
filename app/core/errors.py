"""
Error taxonomy shared by the upload path, the transcription orchestrator and
the producer-side upload driver.

Every error carries a stable ``code`` (rendered in API error bodies and mapped
back to the same class by the driver), the HTTP ``status_code`` used when it
crosses the API boundary, and a ``retriable`` flag consulted by the step
executor: non-retriable errors stop a step on the first attempt.
"""


class ServiceError(Exception):
    code = "INTERNAL"
    status_code = 500
    retriable = True

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


# ---- Manager / caller misuse ----

class InvalidArgument(ServiceError):
    code = "INVALID_ARGUMENT"
    status_code = 400
    retriable = False

class OutOfRange(InvalidArgument):
    code = "OUT_OF_RANGE"

class NotFound(ServiceError):
    code = "NOT_FOUND"
    status_code = 404
    retriable = False

class InvalidState(ServiceError):
    code = "INVALID_STATE"
    status_code = 409
    retriable = False

class Conflict(ServiceError):
    code = "CONFLICT"
    status_code = 409
    retriable = False

class Incomplete(ServiceError):
    code = "INCOMPLETE"
    status_code = 409
    retriable = False


# ---- Orchestrator / collaborators ----

class EngineFailure(ServiceError):
    """Base for anything an engine adapter raises."""
    code = "ENGINE_FAILURE"
    status_code = 502

class EngineUnavailable(EngineFailure):
    code = "ENGINE_UNAVAILABLE"
    retriable = False

class EngineError(EngineFailure):
    code = "ENGINE_ERROR"

    def __init__(self, message: str = "", *, returncode: int | None = None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr

class OutputMissing(EngineFailure):
    code = "OUTPUT_MISSING"

class TranscodeFailure(ServiceError):
    code = "TRANSCODE_FAILURE"
    status_code = 502

class DownloadFailure(ServiceError):
    code = "DOWNLOAD_FAILURE"
    status_code = 502

class Timeout(ServiceError):
    code = "TIMEOUT"
    status_code = 504


ERRORS_BY_CODE: dict[str, type[ServiceError]] = {
    cls.code: cls
    for cls in (
        ServiceError, InvalidArgument, OutOfRange, NotFound, InvalidState, Conflict, Incomplete,
        EngineFailure, EngineUnavailable, EngineError, OutputMissing,
        TranscodeFailure, DownloadFailure, Timeout,
    )
}

def error_from_payload(payload: dict, default_status: int = 500) -> ServiceError:
    """Rebuild a typed error from an API error body."""
    cls = ERRORS_BY_CODE.get(str(payload.get("code")), ServiceError)
    err = cls(str(payload.get("message") or payload.get("detail") or ""))
    if cls is ServiceError:
        err.status_code = default_status
    return err
