"""Job lifecycle — the legal status graph for research jobs.

    QUEUED   -> RUNNING | DEFERRED | CANCELLED
    RUNNING  -> COMPLETED | FAILED | CANCELLED
    DEFERRED -> QUEUED
    FAILED   -> QUEUED      (only while retry_count < max_retries)

COMPLETED and CANCELLED are terminal. FAILED is terminal once retries
are exhausted.
"""

from __future__ import annotations

from research_brain.shell.contract import JobStatus

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING, JobStatus.DEFERRED, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.DEFERRED: frozenset({JobStatus.QUEUED}),
    JobStatus.FAILED: frozenset({JobStatus.QUEUED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


class InvalidTransition(Exception):
    def __init__(self, src: JobStatus, dst: JobStatus, reason: str = "") -> None:
        self.src = src
        self.dst = dst
        msg = f"Illegal job transition {src.value} -> {dst.value}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


def can_transition(
    src: JobStatus,
    dst: JobStatus,
    retry_count: int = 0,
    max_retries: int = 0,
) -> bool:
    if dst not in ALLOWED_TRANSITIONS[src]:
        return False
    if src == JobStatus.FAILED and dst == JobStatus.QUEUED:
        return retry_count < max_retries
    return True


def check_transition(
    src: JobStatus,
    dst: JobStatus,
    retry_count: int = 0,
    max_retries: int = 0,
) -> None:
    if dst not in ALLOWED_TRANSITIONS[src]:
        raise InvalidTransition(src, dst)
    if not can_transition(src, dst, retry_count, max_retries):
        raise InvalidTransition(src, dst, f"retries exhausted {retry_count}/{max_retries}")


def is_terminal(status: JobStatus, retry_count: int = 0, max_retries: int = 0) -> bool:
    if status == JobStatus.FAILED:
        return retry_count >= max_retries
    return not ALLOWED_TRANSITIONS[status]
