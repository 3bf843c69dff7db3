"""Registry of videos currently being processed by Jenkins.

Each video path has at most one record. Records are transient: the read
that observes a finished (or cancelled) job deletes the record, so the
table only ever holds queued or building jobs.

    (none) --start_processing--> queued
    queued --queue item cancelled--> (deleted)
    queued --queue item has a build--> building
    building --build finished--> (deleted)
"""
from __future__ import annotations

import logging
import re
import sqlite3
import time
import uuid
from typing import Callable, Iterable, Optional, Protocol, Sequence

import db

from .common import log
from .models import (
    ACTIVE_STATUSES,
    STATUS_BUILDING,
    STATUS_QUEUED,
    TERMINAL_STATUSES,
    BuildStatusInfo,
    LastBuildInfo,
    ProcessingInfo,
    ProcessingRecord,
    QueueItemInfo,
)

# Keep IN (...) lists well under SQLite's bound-variable limit.
_IN_CHUNK = 500

_QUEUE_ID_RE = re.compile(r"/queue/item/(\d+)/?$")


class JobStatusPoller(Protocol):
    async def get_queue_item(self, queue_url: str) -> QueueItemInfo:
        ...

    async def get_build_status(self, build_url: str) -> BuildStatusInfo:
        ...

    async def get_last_build(self, job_name: str) -> Optional[LastBuildInfo]:
        ...


def queue_id_from_url(queue_url: Optional[str]) -> Optional[int]:
    m = _QUEUE_ID_RE.search(queue_url or "")
    return int(m.group(1)) if m else None


def _chunks(items: Sequence[str], size: int = _IN_CHUNK) -> Iterable[Sequence[str]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


def _select_by_paths(
    conn: sqlite3.Connection,
    paths: Sequence[str],
    statuses: Sequence[str] | None = None,
) -> list[ProcessingRecord]:
    out: list[ProcessingRecord] = []
    for chunk in _chunks(paths):
        sql = f"SELECT * FROM video_processing WHERE video_path IN ({','.join('?' for _ in chunk)})"
        args: list[str] = list(chunk)
        if statuses:
            sql += f" AND status IN ({','.join('?' for _ in statuses)})"
            args.extend(statuses)
        out.extend(ProcessingRecord.from_row(r) for r in conn.execute(sql, args).fetchall())
    return out


class ProcessingRegistry:
    def __init__(self, poller: JobStatusPoller, *, clock: Callable[[], float] | None = None) -> None:
        self._poller = poller
        self._clock = clock or time.time

    def start_processing(
        self,
        video_path: str,
        job_name: str,
        method: str,
        queue_url: Optional[str] = None,
    ) -> ProcessingRecord:
        """Create or reset the record for ``video_path`` to a fresh queued job."""
        now = self._clock()
        with db.session() as conn:
            conn.execute(
                """
                INSERT INTO video_processing (id, video_path, job_name, method, queue_url, build_url, status, started_at)
                VALUES (?, ?, ?, ?, ?, NULL, ?, ?)
                ON CONFLICT(video_path) DO UPDATE SET
                    job_name = excluded.job_name,
                    method = excluded.method,
                    queue_url = excluded.queue_url,
                    build_url = NULL,
                    status = excluded.status,
                    started_at = excluded.started_at
                """,
                (str(uuid.uuid4()), video_path, job_name, method, queue_url, STATUS_QUEUED, now),
            )
            row = conn.execute("SELECT * FROM video_processing WHERE video_path = ?", (video_path,)).fetchone()
        log("processing", "started tracking processing for %s (%s)", video_path, job_name)
        return ProcessingRecord.from_row(row)

    def mark_building(self, video_path: str, build_url: str) -> bool:
        with db.session() as conn:
            cur = conn.execute(
                "UPDATE video_processing SET status = ?, build_url = ? WHERE video_path = ?",
                (STATUS_BUILDING, build_url, video_path),
            )
            changed = cur.rowcount > 0
        return changed

    def _delete(self, record_id: str) -> bool:
        with db.session() as conn:
            cur = conn.execute("DELETE FROM video_processing WHERE id = ?", (record_id,))
            deleted = cur.rowcount > 0
        return deleted

    def _set_building(self, record: ProcessingRecord, build_url: str) -> None:
        with db.session() as conn:
            conn.execute(
                "UPDATE video_processing SET status = ?, build_url = ? WHERE id = ?",
                (STATUS_BUILDING, build_url, record.id),
            )
        record.status = STATUS_BUILDING
        record.build_url = build_url
        log("processing", "job started building for %s", record.video_path)

    async def _build_from_last(self, record: ProcessingRecord) -> Optional[str]:
        """URL of the job's last build if it was started from this record's queue item."""
        queue_id = queue_id_from_url(record.queue_url)
        if queue_id is None:
            return None
        last = await self._poller.get_last_build(record.job_name)
        if last is None:
            return None
        if last.queue_id != queue_id:
            log("processing", "last build of %s is from queue item %s, not %s", record.job_name, last.queue_id, queue_id)
            return None
        return last.url

    async def _refresh_record(self, record: ProcessingRecord) -> None:
        if record.status == STATUS_QUEUED and record.queue_url:
            info = await self._poller.get_queue_item(record.queue_url)
            if info.cancelled:
                self._delete(record.id)
                log("processing", "job cancelled for %s", record.video_path)
                return
            build_url = info.build_url
            if build_url is None and info.missing:
                # Gone from the queue: either it became a build or it was purged.
                build_url = await self._build_from_last(record)
            if build_url:
                self._set_building(record, build_url)

        if record.status == STATUS_BUILDING and record.build_url:
            status = await self._poller.get_build_status(record.build_url)
            if status.finished:
                self._delete(record.id)
                log("processing", "build finished for %s: %s", record.video_path, status.result)

    async def reconcile(self, records: Iterable[ProcessingRecord]) -> None:
        """Bring stored records in line with Jenkins, dropping finished ones."""
        for record in records:
            if record.status in TERMINAL_STATUSES:
                self._delete(record.id)
                continue
            try:
                await self._refresh_record(record)
            except Exception as exc:
                log("processing", "failed to refresh status for %s: %s", record.video_path, exc,
                    level=logging.WARNING)

    async def get_for_paths_and_refresh(self, paths: Iterable[str]) -> dict[str, ProcessingInfo]:
        wanted = list(dict.fromkeys(paths))
        if not wanted:
            return {}
        with db.session() as conn:
            records = _select_by_paths(conn, wanted)
        if not records:
            return {}
        await self.reconcile(records)
        with db.session() as conn:
            live = _select_by_paths(conn, wanted, ACTIVE_STATUSES)
        return {
            r.video_path: ProcessingInfo(job_name=r.job_name, status=r.status, started_at=r.started_at)
            for r in live
        }

    def get_all_active(self) -> list[ProcessingRecord]:
        with db.session() as conn:
            rows = conn.execute(
                f"SELECT * FROM video_processing WHERE status IN ({','.join('?' for _ in ACTIVE_STATUSES)}) "
                "ORDER BY started_at DESC",
                ACTIVE_STATUSES,
            ).fetchall()
        return [ProcessingRecord.from_row(r) for r in rows]

    def get(self, record_id: str) -> Optional[ProcessingRecord]:
        with db.session() as conn:
            row = conn.execute("SELECT * FROM video_processing WHERE id = ?", (record_id,)).fetchone()
        return ProcessingRecord.from_row(row) if row is not None else None

    def remove(self, record_id: str) -> bool:
        """Operator override for stuck records; returns False if the id is unknown."""
        removed = self._delete(record_id)
        if removed:
            log("processing", "manually removed processing record %s", record_id)
        return removed


__all__ = ["JobStatusPoller", "ProcessingRegistry", "queue_id_from_url"]
