"""Error taxonomy shared by the session store, dispatcher, engine and routes.

Every class carries the HTTP status the route layer renders it with. Only
``FatalError`` is allowed to escape to the server; everything else is turned
into an envelope or a failed tool outcome by whoever catches it first.
"""

from typing import Optional


class HarveyError(Exception):
    status_code = 500

    def __init__(self, message: str, *, detail: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ValidationError(HarveyError):
    status_code = 400

    def __init__(self, message: str, *, field: Optional[str] = None, detail: Optional[dict] = None):
        super().__init__(message, detail=detail)
        self.field = field


class NotFoundError(HarveyError):
    status_code = 404


class SessionNotFound(NotFoundError):
    def __init__(self, session_id: str):
        super().__init__("Session not found", detail={"sessionId": session_id})
        self.session_id = session_id


class FileNotFound(NotFoundError):
    def __init__(self, file_id: str, message: Optional[str] = None):
        super().__init__(message or "File not found", detail={"fileId": file_id})
        self.file_id = file_id


class JobNotFound(NotFoundError):
    def __init__(self, job_id: str):
        super().__init__("Job not found", detail={"jobId": job_id})
        self.job_id = job_id


class CollaboratorError(HarveyError):
    """A downstream service timed out, refused, or answered with an error."""

    status_code = 502

    def __init__(self, service: str, message: str, *, status: Optional[int] = None):
        super().__init__(message, detail={"service": service, "status": status})
        self.service = service
        self.status = status


class ProtocolError(HarveyError):
    """The model returned a tool call we cannot parse."""

    status_code = 502


class FatalError(HarveyError):
    status_code = 500
