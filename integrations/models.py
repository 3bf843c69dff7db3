"""Value types shared by the integration layer."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

STATUS_QUEUED = "queued"
STATUS_BUILDING = "building"
STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"

ACTIVE_STATUSES = (STATUS_QUEUED, STATUS_BUILDING)
TERMINAL_STATUSES = (STATUS_SUCCESS, STATUS_FAILED)


@dataclass(frozen=True, slots=True)
class SessionBinding:
    """The credential fields a CVAT session token is tied to."""

    url: str
    username: str


@dataclass(frozen=True, slots=True)
class CvatCredentials:
    url: str
    username: str
    password: str
    cache_timeout_ms: int = 5000

    def binding(self) -> SessionBinding:
        return SessionBinding(url=self.url, username=self.username)


@dataclass(frozen=True, slots=True)
class JenkinsCredentials:
    url: str
    username: str
    api_token: str


@dataclass(slots=True)
class CvatSession:
    token: str
    expires_at_ms: float
    binding: SessionBinding

    def is_valid(self, binding: SessionBinding, now_ms: float) -> bool:
        return bool(self.token) and now_ms < self.expires_at_ms and self.binding == binding


@dataclass(slots=True)
class CvatOccurrence:
    task_id: int
    task_url: str
    project_id: Optional[int]
    project_name: str
    stage: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "task_url": self.task_url,
            "project_id": self.project_id,
            "project_name": self.project_name,
            "stage": self.stage,
        }


@dataclass(slots=True)
class CvatVideoStatus:
    exists: bool
    occurrences: list[CvatOccurrence] = field(default_factory=list)
    has_duplicate_in_same_project: bool = False
    duplicate_project_names: Optional[list[str]] = None

    @classmethod
    def not_found(cls) -> "CvatVideoStatus":
        return cls(exists=False)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "exists": self.exists,
            "occurrences": [occ.to_dict() for occ in self.occurrences],
            "has_duplicate_in_same_project": self.has_duplicate_in_same_project,
        }
        if self.duplicate_project_names is not None:
            out["duplicate_project_names"] = list(self.duplicate_project_names)
        return out


@dataclass(slots=True)
class TaskCacheEntry:
    status: CvatVideoStatus
    expires_at_ms: float


@dataclass(frozen=True, slots=True)
class QueueItemInfo:
    """State of a Jenkins queue item.

    ``missing`` is set when Jenkins answered with a non-2xx status, which
    happens both when the item turned into a build and when it was purged.
    """

    waiting: bool
    cancelled: bool
    build_url: Optional[str] = None
    missing: bool = False


@dataclass(frozen=True, slots=True)
class BuildStatusInfo:
    building: bool
    finished: bool
    result: Optional[str] = None


@dataclass(frozen=True, slots=True)
class LastBuildInfo:
    """The newest build of a job and the queue item it was started from."""

    url: str
    queue_id: Optional[int] = None


@dataclass(frozen=True, slots=True)
class TriggerBuildResult:
    success: bool
    queue_url: Optional[str] = None
    build_url: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.success}
        if self.queue_url is not None:
            out["queue_url"] = self.queue_url
        if self.build_url is not None:
            out["build_url"] = self.build_url
        if self.error is not None:
            out["error"] = self.error
        return out


@dataclass(slots=True)
class ProcessingRecord:
    id: str
    video_path: str
    job_name: str
    method: str
    queue_url: Optional[str]
    build_url: Optional[str]
    status: str
    started_at: float

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ProcessingRecord":
        return cls(
            id=str(row["id"]),
            video_path=str(row["video_path"]),
            job_name=str(row["job_name"]),
            method=str(row["method"]),
            queue_url=row["queue_url"],
            build_url=row["build_url"],
            status=str(row["status"]),
            started_at=float(row["started_at"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "video_path": self.video_path,
            "job_name": self.job_name,
            "method": self.method,
            "queue_url": self.queue_url,
            "build_url": self.build_url,
            "status": self.status,
            "started_at": self.started_at,
        }


@dataclass(frozen=True, slots=True)
class ProcessingInfo:
    job_name: str
    status: str
    started_at: float

    def to_dict(self) -> dict[str, Any]:
        return {"job_name": self.job_name, "status": self.status, "started_at": self.started_at}
