import asyncio
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set, Tuple

from .errors import FileNotFound, SessionNotFound
from .file_store import TRANSFORMATION_PREFIX, FileStore
from .job_registry import JobRegistry
from .schemas import FileRef, Message, PricingContext, utc_now


logger = logging.getLogger("uvicorn.error")

PRICING_MARKERS = ("saasname", "version", "plans", "features", "addons", "usagelimits")
PRICING_MARKER_QUORUM = 3
HEURISTIC_SCAN_LINES = 50
_TOP_LEVEL_KEY_RE = re.compile(r"^([A-Za-z_][\w-]*)\s*:")


def looks_like_pricing_document(name: str, content: str) -> bool:
    """Cheap check used to auto-adopt an upload as the session's pricing context."""
    if not name.lower().endswith((".yaml", ".yml")):
        return False
    seen = set()
    for line in content.splitlines()[:HEURISTIC_SCAN_LINES]:
        match = _TOP_LEVEL_KEY_RE.match(line)
        if match and match.group(1).lower() in PRICING_MARKERS:
            seen.add(match.group(1).lower())
    return len(seen) >= PRICING_MARKER_QUORUM


@dataclass
class Session:
    id: str
    created_at: datetime = field(default_factory=utc_now)
    last_activity: datetime = field(default_factory=utc_now)
    messages: List[Message] = field(default_factory=list)
    files: Dict[str, FileRef] = field(default_factory=dict)
    jobs: JobRegistry = field(default_factory=JobRegistry)
    pricing_context: Optional[PricingContext] = None
    # Serializes turns and mutations on this session only.
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def touch(self) -> None:
        now = utc_now()
        if now > self.last_activity:
            self.last_activity = now


class SessionStore:
    """In-process registry of chat sessions.

    Methods that take a session id acquire that session's lock. Methods that
    take a ``Session`` expect the caller to already hold it (the engine does
    for the whole turn).
    """

    def __init__(self, file_store: FileStore, *, auto_detect_pricing_uploads: bool = True):
        self.file_store = file_store
        self.auto_detect_pricing_uploads = auto_detect_pricing_uploads
        self._sessions: Dict[str, Session] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    async def create(self) -> Session:
        session = Session(id=uuid.uuid4().hex)
        async with self._lock:
            self._sessions[session.id] = session
        logger.info("Created session %s", session.id)
        return session

    async def get(self, session_id: str) -> Session:
        async with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    async def touch(self, session_id: str) -> Session:
        session = await self.get(session_id)
        session.touch()
        return session

    async def attach_file(self, session_id: str, data: bytes, original_name: str) -> FileRef:
        session = await self.get(session_id)
        async with session.lock:
            return await self.attach_to(session, data, original_name)

    async def attach_to(self, session: Session, data: bytes, original_name: str) -> FileRef:
        ref = await self.file_store.save(data, original_name)
        result = await self.file_store.validate(ref.id)
        if not result.is_valid:
            ref.status = "invalid"
            ref.validation_error = result.error
        session.files[ref.id] = ref
        session.touch()
        if self.auto_detect_pricing_uploads and result.is_valid:
            content = data.decode("utf-8", errors="replace")
            if looks_like_pricing_document(ref.original_name, content):
                session.pricing_context = PricingContext(
                    content=content, file_name=ref.original_name, file_id=ref.id, source="upload"
                )
                logger.info("Session %s: adopted %s as pricing context", session.id, ref.original_name)
        return ref

    def add_file_ref(self, session: Session, ref: FileRef) -> None:
        session.files[ref.id] = ref
        session.touch()

    async def resolve_file(self, session: Session, file_id: str) -> FileRef:
        """Find a file among the session's own files, then the transformation pool."""
        ref = session.files.get(file_id)
        if ref is not None:
            return ref
        ref = await self.file_store.get(file_id)
        if ref is not None and ref.kind == TRANSFORMATION_PREFIX:
            return ref
        raise FileNotFound(
            file_id,
            f"File with ID {file_id} not found. Upload it to this session or produce it with a transformation first.",
        )

    async def set_pricing_context(self, session_id: str, file_id: str) -> PricingContext:
        session = await self.get(session_id)
        async with session.lock:
            return await self.apply_pricing_context(session, file_id, source="manual")

    async def apply_pricing_context(self, session: Session, file_id: str, *, source: str) -> PricingContext:
        ref = await self.resolve_file(session, file_id)
        content = await self.file_store.read_text(ref.id)
        context = PricingContext(content=content, file_name=ref.original_name, file_id=ref.id, source=source)
        session.pricing_context = context
        session.touch()
        logger.info("Session %s: pricing context set to %s (%s)", session.id, ref.original_name, source)
        return context

    async def clear_pricing_context(self, session_id: str) -> None:
        session = await self.get(session_id)
        async with session.lock:
            session.pricing_context = None
            session.touch()

    async def get_pricing_context_info(self, session_id: str) -> Dict[str, Any]:
        session = await self.touch(session_id)
        context = session.pricing_context
        if context is None:
            return {"hasContext": False, "fileName": None, "fileId": None, "contentLength": 0, "source": None}
        return {
            "hasContext": True,
            "fileName": context.file_name,
            "fileId": context.file_id,
            "contentLength": len(context.content),
            "source": context.source,
        }

    async def list_messages(self, session_id: str) -> List[Message]:
        session = await self.touch(session_id)
        return list(session.messages)

    async def list_files(self, session_id: str) -> List[FileRef]:
        session = await self.touch(session_id)
        return sorted(session.files.values(), key=lambda ref: ref.uploaded_at)

    async def session_info(self, session_id: str) -> Dict[str, Any]:
        session = await self.touch(session_id)
        return {
            "sessionId": session.id,
            "createdAt": session.created_at.isoformat(),
            "lastActivity": session.last_activity.isoformat(),
            "messageCount": len(session.messages),
            "fileCount": len(session.files),
            "files": [ref.public_dict() for ref in session.files.values()],
            "jobs": [job.model_dump(mode="json") for job in session.jobs.all()],
            "hasPricingContext": session.pricing_context is not None,
        }

    async def remove_file(self, session_id: str, file_id: str) -> None:
        session = await self.get(session_id)
        async with session.lock:
            if file_id not in session.files:
                raise FileNotFound(file_id)
            session.files.pop(file_id)
            await self.file_store.delete(file_id)
            if session.pricing_context and session.pricing_context.file_id == file_id:
                session.pricing_context = None
            session.touch()

    def commit_turn(self, session: Session, messages: List[Message]) -> None:
        session.messages.extend(messages)
        session.touch()

    async def delete(self, session_id: str) -> None:
        async with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            raise SessionNotFound(session_id)
        # Let an in-flight turn finish before its files disappear.
        async with session.lock:
            await self._release_files(session)
        logger.info("Deleted session %s", session_id)

    async def referenced_file_ids(self) -> Set[str]:
        async with self._lock:
            referenced = {file_id for session in self._sessions.values() for file_id in session.files}
            referenced.update(
                session.pricing_context.file_id
                for session in self._sessions.values()
                if session.pricing_context is not None and session.pricing_context.file_id
            )
            return referenced

    async def snapshot(self) -> List[Tuple[str, datetime]]:
        async with self._lock:
            return [(session.id, session.last_activity) for session in self._sessions.values()]

    async def remove_if_idle(self, session_id: str, seen_activity: datetime) -> bool:
        """Drop a session only if nothing touched it since ``seen_activity`` and no turn is running."""
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            if session.last_activity != seen_activity or session.lock.locked():
                return False
            self._sessions.pop(session_id)
        await self._release_files(session)
        return True

    async def reap_inactive(self, threshold: timedelta, now: Optional[datetime] = None) -> List[str]:
        cutoff = (now or utc_now()) - threshold
        removed = []
        for session_id, last_activity in await self.snapshot():
            if last_activity >= cutoff:
                continue
            if await self.remove_if_idle(session_id, last_activity):
                removed.append(session_id)
        return removed

    async def _release_files(self, session: Session) -> None:
        for file_id, ref in list(session.files.items()):
            if ref.kind == TRANSFORMATION_PREFIX:
                # Stays in the shared pool until the age sweep removes it.
                continue
            try:
                await self.file_store.delete(file_id)
            except OSError as exc:
                logger.warning("Could not delete file %s of session %s: %s", file_id, session.id, exc)
        session.files.clear()
        session.pricing_context = None
