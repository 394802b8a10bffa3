"""Project history store.

The orchestrator notifies a history store when a run starts (new record)
and when it ends (status, output paths, derived audio duration). Those
notifications are fire-and-forget: the store may fail, and the pipeline
result must not change when it does.

This module defines the store protocol and a JSON-file implementation used
by the worker and the CLI ``history`` command.

Usage:
    from audiobook_uploader.services.project_history import JsonProjectHistoryStore

    store = JsonProjectHistoryStore(Path("~/.audiobook-uploader/history.json").expanduser())
    record_id = store.record_started(config)
    store.record_finished(record_id, result)
    for record in store.list_records():
        print(record.title, record.status)
"""

import json
import os
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal, Protocol

from pydantic import BaseModel, Field, ValidationError

from audiobook_uploader.schemas.pipeline import PipelineConfig, PipelineResult
from audiobook_uploader.utils.logging import get_logger

log = get_logger(__name__)

RecordStatus = Literal["running", "completed", "failed"]


class ProjectHistoryStore(Protocol):
    """Collaborator notified at run start and run end."""

    def record_started(self, config: PipelineConfig) -> str: ...

    def record_finished(self, record_id: str, result: PipelineResult) -> None: ...


class ProjectRecord(BaseModel):
    """One pipeline run as stored in history."""

    id: str
    title: str
    status: RecordStatus = "running"
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None
    output_video_path: str
    thumbnail_path: str | None = None
    audio_duration: float | None = None
    publish_url: str | None = None
    error: str | None = None


class JsonProjectHistoryStore:
    """History store persisting records to a single JSON file.

    Writes are atomic (temp file + rename) and serialized with a lock so
    concurrent notifications from worker threads cannot interleave.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    def _load(self) -> list[ProjectRecord]:
        if not self.path.exists():
            return []
        raw = json.loads(self.path.read_text(encoding="utf-8") or "[]")
        records = []
        for item in raw:
            try:
                records.append(ProjectRecord.model_validate(item))
            except ValidationError as e:
                log.warning("history_record_skipped", error=str(e))
        return records

    def _save(self, records: list[ProjectRecord]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(
            json.dumps([r.model_dump(mode="json") for r in records], ensure_ascii=False, indent=2),
            encoding="utf-8",
        )
        os.replace(tmp_path, self.path)

    def list_records(self) -> list[ProjectRecord]:
        """Return all records, newest first."""
        with self._lock:
            records = self._load()
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    def record_started(self, config: PipelineConfig) -> str:
        record = ProjectRecord(
            id=uuid.uuid4().hex,
            title=config.story_title,
            output_video_path=config.output_video_path,
        )
        with self._lock:
            records = self._load()
            records.append(record)
            self._save(records)
        log.debug("history_record_started", record_id=record.id)
        return record.id

    def record_finished(self, record_id: str, result: PipelineResult) -> None:
        with self._lock:
            records = self._load()
            for record in records:
                if record.id != record_id:
                    continue
                record.status = "completed" if result.success else "failed"
                record.finished_at = datetime.now(timezone.utc)
                record.thumbnail_path = result.thumbnail_path
                record.audio_duration = result.audio_duration
                record.publish_url = result.publish_result.url if result.publish_result else None
                record.error = result.error
                break
            else:
                raise KeyError(f"Unknown history record: {record_id}")
            self._save(records)
        log.debug("history_record_finished", record_id=record_id, status=record.status)

    def delete_record(self, record_id: str) -> bool:
        with self._lock:
            records = self._load()
            remaining = [r for r in records if r.id != record_id]
            if len(remaining) == len(records):
                return False
            self._save(remaining)
        return True
