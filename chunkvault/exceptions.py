"""Error taxonomy shared by the upload client and server."""
from typing import List, Optional


class UploadError(Exception):
    """Base class for upload failures.

    Carries the session id and, where it applies, the failing part number so
    a caller can decide whether to resume later with the same session.
    """

    status_code = 400
    code = "upload_error"

    def __init__(self, message: str, session_id: Optional[str] = None,
                 part_number: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.session_id = session_id
        self.part_number = part_number

    def to_detail(self) -> dict:
        detail = {"code": self.code, "message": self.message}
        if self.session_id:
            detail["session_id"] = self.session_id
        if self.part_number is not None:
            detail["part_number"] = self.part_number
        return detail


class ReadError(UploadError):
    code = "read_error"


class SessionInitError(UploadError):
    code = "session_init_failed"


class AuthExpired(UploadError):
    status_code = 401
    code = "credential_expired"


class TransferFailed(UploadError):
    status_code = 502
    code = "transfer_failed"


class IncompleteOnComplete(UploadError):
    status_code = 409
    code = "incomplete"

    def __init__(self, message: str, session_id: Optional[str] = None,
                 missing_parts: Optional[List[int]] = None):
        super().__init__(message, session_id=session_id)
        self.missing_parts = sorted(missing_parts or [])

    def to_detail(self) -> dict:
        detail = super().to_detail()
        detail["missing_parts"] = self.missing_parts
        return detail


class MergeError(UploadError):
    status_code = 500
    code = "merge_failed"


class UploadCancelled(UploadError):
    code = "cancelled"


# Server-side rejections

class SessionNotFound(UploadError):
    status_code = 404
    code = "session_not_found"


class SessionStateError(UploadError):
    status_code = 409
    code = "invalid_session_state"


class InvalidPart(UploadError):
    status_code = 400
    code = "invalid_part"


class FileTooLarge(SessionInitError):
    status_code = 413
    code = "file_too_large"


class CredentialExpired(AuthExpired):
    pass


class CredentialRejected(UploadError):
    status_code = 403
    code = "credential_rejected"


class CompletionInProgress(UploadError):
    status_code = 409
    code = "completion_in_progress"
