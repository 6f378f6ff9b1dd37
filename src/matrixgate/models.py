from __future__ import annotations

from dataclasses import dataclass
from typing import Any

LEADER_ORDINAL = "1"


def is_leader(job_number: str) -> bool:
    """Return True when the ordinal after the last `.` is the leader ordinal."""
    return job_number.rpartition(".")[2] == LEADER_ORDINAL


def _optional_int(raw: dict[str, Any], key: str, context: str) -> int | None:
    value = raw.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"`{context}.{key}` must be an integer or null")
    return value


@dataclass(frozen=True, slots=True)
class JobStatus:
    number: str
    finished_at: str | None = None
    result: int | None = None
    id: int | None = None

    @classmethod
    def from_payload(cls, raw: object, context: str = "job") -> JobStatus:
        if not isinstance(raw, dict):
            raise ValueError(f"`{context}` must be an object")
        number = raw.get("number")
        if not isinstance(number, str):
            raise ValueError(f"`{context}.number` must be a string")
        finished_at = raw.get("finished_at")
        if finished_at is not None and not isinstance(finished_at, str):
            raise ValueError(f"`{context}.finished_at` must be a string or null")
        return cls(
            number=number,
            finished_at=finished_at,
            result=_optional_int(raw, "result", context),
            id=_optional_int(raw, "id", context),
        )

    def is_leader(self) -> bool:
        return is_leader(self.number)

    def is_finished(self) -> bool:
        return self.finished_at is not None

    def is_succeeded(self) -> bool:
        # `result` may be stale until the job reports `finished_at`.
        if not self.is_finished():
            return False
        return self.result == 0


@dataclass(frozen=True, slots=True)
class Matrix:
    """Snapshot of every job in one build, decoded from a single response."""

    build_id: int
    jobs: tuple[JobStatus, ...]

    def __post_init__(self) -> None:
        if not self.jobs:
            raise ValueError("build matrix must contain at least one job")

    @classmethod
    def from_payload(cls, payload: object) -> Matrix:
        if not isinstance(payload, dict):
            raise ValueError("build payload must be an object")
        build_id = payload.get("id")
        if isinstance(build_id, bool) or not isinstance(build_id, int):
            raise ValueError("`id` must be an integer")
        jobs_raw = payload.get("matrix")
        if not isinstance(jobs_raw, list) or not jobs_raw:
            raise ValueError("`matrix` must be a non-empty list")
        jobs = tuple(JobStatus.from_payload(item, f"matrix[{idx}]") for idx, item in enumerate(jobs_raw))
        return cls(build_id=build_id, jobs=jobs)

    def others(self) -> tuple[JobStatus, ...]:
        return tuple(job for job in self.jobs if not job.is_leader())

    def others_finished(self) -> bool:
        return all(job.is_finished() for job in self.others())

    def others_succeeded(self) -> bool:
        return all(job.is_succeeded() for job in self.others())

    def pending(self) -> list[str]:
        return [job.number for job in self.others() if not job.is_finished()]

    def failed(self) -> list[str]:
        """Peers that have not succeeded, unfinished ones included."""
        return [job.number for job in self.others() if not job.is_succeeded()]
