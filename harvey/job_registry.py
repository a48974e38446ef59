from typing import Dict, List, Optional

from .errors import JobNotFound
from .schemas import JobRef, utc_now


_STATUS_ALIASES = {
    "queued": "pending",
    "pending": "pending",
    "running": "running",
    "in_progress": "running",
    "processing": "running",
    "completed": "completed",
    "done": "completed",
    "success": "completed",
    "failed": "failed",
    "error": "failed",
}


def normalize_status(value: Optional[str]) -> str:
    """Map the status spellings the downstream services use onto JobStatus."""
    return _STATUS_ALIASES.get(str(value or "").strip().lower(), "pending")


class JobRegistry:
    """Jobs and transformation tasks started from one session.

    Status only moves when a caller reports a poll result; nothing here talks
    to the network.
    """

    def __init__(self) -> None:
        self._jobs: Dict[str, JobRef] = {}

    def record(self, job_id: str, kind: str, *, status: str = "pending", source_url: Optional[str] = None) -> JobRef:
        existing = self._jobs.get(job_id)
        if existing is not None:
            return existing
        ref = JobRef(id=job_id, kind=kind, status=normalize_status(status), source_url=source_url)
        self._jobs[job_id] = ref
        return ref

    def get(self, job_id: str) -> Optional[JobRef]:
        return self._jobs.get(job_id)

    def require(self, job_id: str) -> JobRef:
        ref = self._jobs.get(job_id)
        if ref is None:
            raise JobNotFound(job_id)
        return ref

    def update_status(
        self, job_id: str, status: str, *, kind: str = "analysis", detail: Optional[str] = None
    ) -> JobRef:
        ref = self._jobs.get(job_id)
        if ref is None:
            # Polling a job started elsewhere still gets tracked from here on.
            ref = self.record(job_id, kind)
        # A poll without a recognisable status leaves the last known one in place.
        known = _STATUS_ALIASES.get(str(status or "").strip().lower())
        if known is not None:
            ref.status = known
        ref.updated_at = utc_now()
        if detail is not None:
            ref.detail = detail
        return ref

    def set_output_file(self, job_id: str, file_id: str) -> JobRef:
        ref = self.require(job_id)
        ref.output_file_id = file_id
        ref.status = "completed"
        ref.updated_at = utc_now()
        return ref

    def all(self) -> List[JobRef]:
        return sorted(self._jobs.values(), key=lambda ref: ref.created_at)
