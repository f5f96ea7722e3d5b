"""Coarse per-PR fix-attempt tracking used for dashboard badges."""
from __future__ import annotations

import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import structlog

from event_broadcaster import EVENT_JOB_STATUS, EventBroadcaster
from hub_errors import ValidationError
from pr_refresh import Correlator, correlation_key

logger = structlog.get_logger()


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.COMPLETE, JobStatus.FAILED)


class JobCategory(str, Enum):
    CHECKS = "checks"
    COMMENTS = "comments"
    CONFLICTS = "conflicts"
    ALL = "all"


@dataclass(frozen=True)
class Job:
    repo: str
    number: int
    category: JobCategory
    status: JobStatus
    started_at: float
    completed_at: Optional[float] = None
    summary: Optional[str] = None
    error: Optional[str] = None

    @property
    def id(self) -> str:
        return correlation_key(self.repo, self.number)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "repo": self.repo,
            "number": self.number,
            "type": self.category.value,
            "status": self.status.value,
            "startedAt": int(self.started_at * 1000),
            "completedAt": int(self.completed_at * 1000) if self.completed_at is not None else None,
            "summary": self.summary,
            "error": self.error,
        }


def coerce_number(value: Any) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid PR number: {value!r}") from None
    if number <= 0:
        raise ValidationError(f"Invalid PR number: {value!r}")
    return number


def coerce_enum(enum_cls: type, value: Any, field_name: str) -> Any:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value))
    except ValueError:
        allowed = ", ".join(item.value for item in enum_cls)
        raise ValidationError(f"Invalid {field_name} {value!r}; expected one of: {allowed}") from None


class JobRegistry:
    """One Job per (repo, PR number). Reports upsert and always publish."""

    def __init__(
        self,
        broadcaster: EventBroadcaster,
        correlator: Optional[Correlator] = None,
        retention_seconds: float = 600.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.broadcaster = broadcaster
        self.correlator = correlator
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._jobs: Dict[str, Job] = {}

    def __len__(self) -> int:
        return len(self._jobs)

    def get(self, repo: str, number: int) -> Optional[Job]:
        return self._jobs.get(correlation_key(repo, number))

    def list(self) -> List[Job]:
        return list(self._jobs.values())

    def report(
        self,
        repo: str,
        number: Any,
        status: Any,
        category: Any = None,
        summary: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Job:
        if not repo:
            raise ValidationError("Missing required field: repo")
        if status in (None, ""):
            raise ValidationError("Missing required field: status")
        num = coerce_number(number)
        job_status = coerce_enum(JobStatus, status, "status")
        job_category = coerce_enum(JobCategory, category, "type") if category else None

        now = self._clock()
        key = correlation_key(repo, num)
        existing = self._jobs.get(key)
        if existing is None:
            job = Job(
                repo=repo,
                number=num,
                category=job_category or JobCategory.ALL,
                status=job_status,
                started_at=now,
                summary=summary or None,
                error=error or None,
            )
        else:
            job = replace(
                existing,
                category=job_category or existing.category,
                status=job_status,
                summary=summary or existing.summary,
                error=error or existing.error,
            )
        job = replace(job, completed_at=now if job_status.terminal else None)
        self._jobs[key] = job

        logger.info(
            "job_reported",
            job_id=key,
            status=job_status.value,
            updated=existing is not None,
            summary=job.summary,
            error=job.error,
        )
        self.broadcaster.publish(EVENT_JOB_STATUS, job.to_dict())

        if job_status is JobStatus.COMPLETE and self.correlator is not None:
            self.correlator.schedule(repo, num)
        return job

    def start(self, repo: str, number: Any, category: Any = None) -> Job:
        """Begin a new attempt: replace any previous job for the PR with a fresh running one."""
        num = coerce_number(number)
        job_category = coerce_enum(JobCategory, category, "type") if category else JobCategory.ALL
        key = correlation_key(repo, num)
        replaced = self._jobs.get(key)
        job = Job(
            repo=repo,
            number=num,
            category=job_category,
            status=JobStatus.RUNNING,
            started_at=self._clock(),
        )
        self._jobs[key] = job
        logger.info("job_started", job_id=key, replaced=replaced is not None)
        self.broadcaster.publish(EVENT_JOB_STATUS, job.to_dict())
        return job

    def clear(self, repo: str, number: Any) -> bool:
        num = coerce_number(number)
        key = correlation_key(repo, num)
        if self._jobs.pop(key, None) is None:
            return False
        self.broadcaster.publish(
            EVENT_JOB_STATUS, {"id": key, "repo": repo, "number": num, "status": "cleared"}
        )
        return True

    def sweep(self, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now
        expired = [
            key
            for key, job in self._jobs.items()
            if job.completed_at is not None and now - job.completed_at > self.retention_seconds
        ]
        for key in expired:
            del self._jobs[key]
        if expired:
            logger.debug("jobs_expired", count=len(expired))
        return len(expired)
