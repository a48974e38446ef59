import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, List, Optional
from urllib.parse import urlparse

import yaml

from .db import Database, parse_utc, utc_iso
from .errors import FileNotFound
from .schemas import FileRef, ValidationResult


logger = logging.getLogger("uvicorn.error")

REQUIRED_PRICING_FIELDS = ("saasName", "plans")
TRANSFORMATION_PREFIX = "transformation"

_FILE_COLUMNS = (
    "file_id, kind, original_name, storage_path, size_bytes, status, validation_error, uploaded_at, source_url"
)


def validate_pricing_yaml(content: str) -> ValidationResult:
    try:
        parsed = yaml.safe_load(content)
    except yaml.YAMLError as exc:
        return ValidationResult(is_valid=False, error=f"Invalid YAML: {exc}")
    if not isinstance(parsed, dict):
        return ValidationResult(is_valid=False, error="Invalid YAML structure")
    for field in REQUIRED_PRICING_FIELDS:
        if field not in parsed:
            return ValidationResult(
                is_valid=False,
                error=f"Missing required field: {field}",
                missing_field=field,
            )
    return ValidationResult(is_valid=True)


def transformation_file_name(source_url: Optional[str], task_id: str) -> str:
    host = urlparse(source_url).hostname if source_url else None
    if not host:
        return f"pricing_from_transformation_{task_id}.yaml"
    return f"pricing_from_{host}.yaml"


def _row_to_ref(row) -> FileRef:
    return FileRef(
        id=row["file_id"],
        kind=row["kind"] or "upload",
        original_name=row["original_name"],
        storage_path=row["storage_path"],
        size_bytes=int(row["size_bytes"] or 0),
        status=row["status"] or "uploaded",
        validation_error=row["validation_error"] or None,
        uploaded_at=parse_utc(row["uploaded_at"]),
        source_url=row["source_url"] or None,
    )


class FileStore:
    """Uploaded and produced pricing documents: bytes on disk, refs indexed in SQLite."""

    def __init__(self, db: Database, upload_dir: Path):
        self.db = db
        self.upload_dir = Path(upload_dir)

    async def save(
        self,
        data: bytes,
        original_name: str,
        *,
        kind: str = "upload",
        source_url: Optional[str] = None,
        task_id: Optional[str] = None,
    ) -> FileRef:
        file_id = str(uuid.uuid4())
        safe_name = Path(original_name).name or "upload.yaml"
        if kind == TRANSFORMATION_PREFIX:
            stored_name = f"{TRANSFORMATION_PREFIX}_{task_id or 'unknown'}_{file_id}.yaml"
        else:
            stored_name = f"{uuid.uuid4().hex}_{safe_name}"
        path = self.upload_dir / stored_name
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(path.write_bytes, data)
        ref = FileRef(
            id=file_id,
            kind=kind,
            original_name=safe_name,
            storage_path=str(path),
            size_bytes=len(data),
            uploaded_at=datetime.now(timezone.utc),
            source_url=source_url,
        )
        await self.db.execute(
            f"INSERT INTO file_refs({_FILE_COLUMNS}, task_id) VALUES (?,?,?,?,?,?,?,?,?,?)",
            (
                ref.id,
                ref.kind,
                ref.original_name,
                ref.storage_path,
                ref.size_bytes,
                ref.status,
                "",
                utc_iso(ref.uploaded_at),
                source_url or "",
                task_id or "",
            ),
        )
        logger.info("Stored %s file %s (%s, %d bytes)", kind, ref.id, ref.original_name, ref.size_bytes)
        return ref

    async def save_transformation_result(self, task_id: str, yaml_content: str, source_url: Optional[str]) -> FileRef:
        return await self.save(
            yaml_content.encode("utf-8"),
            transformation_file_name(source_url, task_id),
            kind=TRANSFORMATION_PREFIX,
            source_url=source_url,
            task_id=task_id,
        )

    async def find_transformation_output(self, task_id: str) -> Optional[FileRef]:
        row = await self.db.fetchone(
            f"SELECT {_FILE_COLUMNS} FROM file_refs WHERE kind=? AND task_id=? ORDER BY uploaded_at ASC LIMIT 1",
            (TRANSFORMATION_PREFIX, task_id),
        )
        return _row_to_ref(row) if row else None

    async def get(self, file_id: str) -> Optional[FileRef]:
        row = await self.db.fetchone(f"SELECT {_FILE_COLUMNS} FROM file_refs WHERE file_id=?", (file_id,))
        return _row_to_ref(row) if row else None

    async def read(self, file_id: str) -> bytes:
        ref = await self.get(file_id)
        if ref is None:
            raise FileNotFound(file_id)
        path = Path(ref.storage_path)
        if not path.exists():
            raise FileNotFound(file_id, "File missing on disk")
        return await asyncio.to_thread(path.read_bytes)

    async def read_text(self, file_id: str) -> str:
        data = await self.read(file_id)
        return data.decode("utf-8", errors="replace")

    async def validate(self, file_id: str) -> ValidationResult:
        content = await self.read_text(file_id)
        result = validate_pricing_yaml(content)
        await self.db.execute(
            "UPDATE file_refs SET status=?, validation_error=? WHERE file_id=?",
            ("uploaded" if result.is_valid else "invalid", result.error or "", file_id),
        )
        return result

    async def delete(self, file_id: str) -> bool:
        ref = await self.get(file_id)
        if ref is None:
            return False
        path = Path(ref.storage_path)
        await asyncio.to_thread(path.unlink, True)
        await self.db.execute("DELETE FROM file_refs WHERE file_id=?", (file_id,))
        logger.info("Deleted file %s (%s)", file_id, ref.original_name)
        return True

    async def list_by_prefix(self, kind: str) -> List[FileRef]:
        rows = await self.db.fetchall(
            f"SELECT {_FILE_COLUMNS} FROM file_refs WHERE kind LIKE ? ORDER BY uploaded_at DESC",
            (f"{kind}%",),
        )
        return [_row_to_ref(row) for row in rows]

    async def sweep(
        self, older_than_hours: float, kind: Optional[str] = None, *, keep: Iterable[str] = ()
    ) -> int:
        cutoff = utc_iso(datetime.now(timezone.utc) - timedelta(hours=older_than_hours))
        if kind:
            rows = await self.db.fetchall(
                "SELECT file_id FROM file_refs WHERE uploaded_at < ? AND kind=?",
                (cutoff, kind),
            )
        else:
            rows = await self.db.fetchall("SELECT file_id FROM file_refs WHERE uploaded_at < ?", (cutoff,))
        kept = set(keep)
        deleted = 0
        for row in rows:
            if row["file_id"] in kept:
                continue
            if await self.delete(row["file_id"]):
                deleted += 1
        if deleted:
            logger.info("Swept %d file(s) older than %sh", deleted, older_than_hours)
        return deleted
