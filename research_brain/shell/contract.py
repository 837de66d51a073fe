"""IO Contract — types shared between the orchestrator, executors and sinks.

Modes are a closed set; each carries its policy as data (cost class,
priority, cooldown, slot alignment, backpressure limits). Executors and
candidate sinks plug in through the base classes at the bottom.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from research_brain.shell.clock import from_db


# --- Enums ---

class ResearchMode(Enum):
    CONTRARIAN_SCAN = "CONTRARIAN_SCAN"
    SENTIMENT_BURST = "SENTIMENT_BURST"
    DEEP_REASONING = "DEEP_REASONING"
    FULL_SPECTRUM = "FULL_SPECTRUM"


class JobStatus(Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    DEFERRED = "DEFERRED"
    CANCELLED = "CANCELLED"


class CostClass(Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


# Modes the scheduler launches on its own. FULL_SPECTRUM only exists as a
# combination of these.
AUTONOMOUS_MODES = (
    ResearchMode.SENTIMENT_BURST,
    ResearchMode.CONTRARIAN_SCAN,
    ResearchMode.DEEP_REASONING,
)


class InvalidRequest(ValueError):
    """Operator input that cannot be turned into a research job."""


def parse_sub_modes(requested) -> tuple[ResearchMode, ...]:
    """Validate a FULL_SPECTRUM sub-mode list. Order is kept, duplicates dropped."""
    if not isinstance(requested, (list, tuple)) or not requested:
        raise InvalidRequest("subModes must be a non-empty list of mode names")
    modes: list[ResearchMode] = []
    for name in requested:
        try:
            mode = ResearchMode(name)
        except ValueError:
            mode = None
        if mode not in AUTONOMOUS_MODES:
            valid = ", ".join(m.value for m in AUTONOMOUS_MODES)
            raise InvalidRequest(f"subModes entries must be one of: {valid}, got {name!r}")
        if mode not in modes:
            modes.append(mode)
    return tuple(modes)


# --- Mode policy ---

@dataclass(frozen=True)
class ModePolicy:
    mode: ResearchMode
    cost_class: CostClass
    priority: int
    cooldown_minutes: int
    slot_minutes: tuple[int, ...] = ()     # minute offsets within the hour; empty = no alignment
    slot_window_minutes: int = 1
    backpressure_ceiling: int = 5
    backpressure_penalty_minutes: int = 15
    provider: str = "anthropic"
    estimated_cost_usd: float = 0.0
    timeout_seconds: int = 300

    @property
    def is_slot_aligned(self) -> bool:
        return bool(self.slot_minutes)


DEFAULT_POLICIES: dict[ResearchMode, ModePolicy] = {
    ResearchMode.SENTIMENT_BURST: ModePolicy(
        mode=ResearchMode.SENTIMENT_BURST,
        cost_class=CostClass.LOW,
        priority=80,
        cooldown_minutes=30,
        slot_minutes=(5, 35),
        slot_window_minutes=1,
        estimated_cost_usd=0.25,
        timeout_seconds=120,
    ),
    ResearchMode.CONTRARIAN_SCAN: ModePolicy(
        mode=ResearchMode.CONTRARIAN_SCAN,
        cost_class=CostClass.MEDIUM,
        priority=60,
        cooldown_minutes=120,
        slot_minutes=(20,),
        slot_window_minutes=5,
        estimated_cost_usd=1.0,
        timeout_seconds=300,
    ),
    ResearchMode.DEEP_REASONING: ModePolicy(
        mode=ResearchMode.DEEP_REASONING,
        cost_class=CostClass.HIGH,
        priority=40,
        cooldown_minutes=360,
        slot_minutes=(50,),
        slot_window_minutes=5,
        estimated_cost_usd=3.0,
        timeout_seconds=600,
    ),
    ResearchMode.FULL_SPECTRUM: ModePolicy(
        mode=ResearchMode.FULL_SPECTRUM,
        cost_class=CostClass.HIGH,
        priority=90,
        cooldown_minutes=0,
        estimated_cost_usd=4.25,
        timeout_seconds=600,
    ),
}


# --- Persistent records ---

@dataclass
class ResearchJob:
    id: str
    mode: ResearchMode
    status: JobStatus
    cost_class: CostClass
    priority: int
    created_at: datetime
    updated_at: datetime
    scheduled_for: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    retry_count: int = 0
    max_retries: int = 0
    fingerprint_hash: Optional[str] = None
    deferred_reason: Optional[str] = None
    error_message: Optional[str] = None
    cost_usd: Optional[float] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    candidates_created: int = 0
    context: dict = field(default_factory=dict)
    result: Optional[dict] = None
    trace_id: Optional[str] = None
    source: str = "scheduled"

    @classmethod
    def from_row(cls, row: dict) -> ResearchJob:
        return cls(
            id=row["id"],
            mode=ResearchMode(row["mode"]),
            status=JobStatus(row["status"]),
            cost_class=CostClass(row["cost_class"]),
            priority=row["priority"],
            created_at=from_db(row["created_at"]),
            updated_at=from_db(row["updated_at"]),
            scheduled_for=from_db(row["scheduled_for"]),
            started_at=from_db(row["started_at"]),
            completed_at=from_db(row["completed_at"]),
            retry_count=row["retry_count"],
            max_retries=row["max_retries"],
            fingerprint_hash=row["fingerprint_hash"],
            deferred_reason=row["deferred_reason"],
            error_message=row["error_message"],
            cost_usd=row["cost_usd"],
            input_tokens=row["input_tokens"],
            output_tokens=row["output_tokens"],
            candidates_created=row["candidates_created"] or 0,
            context=json.loads(row["context_json"]) if row["context_json"] else {},
            result=json.loads(row["result_json"]) if row["result_json"] else None,
            trace_id=row["trace_id"],
            source=row["source"] or "scheduled",
        )

    @property
    def sub_modes(self) -> list[ResearchMode]:
        """Modes covered by this job (the sub-modes for FULL_SPECTRUM)."""
        if self.mode != ResearchMode.FULL_SPECTRUM:
            return [self.mode]
        return [ResearchMode(m) for m in self.context.get("subModes", [])]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "mode": self.mode.value,
            "status": self.status.value,
            "cost_class": self.cost_class.value,
            "priority": self.priority,
            "scheduled_for": self.scheduled_for.isoformat() if self.scheduled_for else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "fingerprint_hash": self.fingerprint_hash,
            "deferred_reason": self.deferred_reason,
            "error_message": self.error_message,
            "cost_usd": self.cost_usd,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "candidates_created": self.candidates_created,
            "source": self.source,
            "trace_id": self.trace_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class OrchestratorState:
    is_full_spectrum_enabled: bool = False
    last_run: dict[ResearchMode, Optional[datetime]] = field(default_factory=dict)
    backpressure: dict[ResearchMode, int] = field(default_factory=dict)
    total_jobs_today: int = 0
    total_cost_today: float = 0.0
    provider_quota: dict = field(default_factory=dict)
    last_daily_reset_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def last_run_at(self, mode: ResearchMode) -> Optional[datetime]:
        return self.last_run.get(mode)

    def backpressure_for(self, mode: ResearchMode) -> int:
        return self.backpressure.get(mode, 0)

    def bump_backpressure(self, mode: ResearchMode, delta: int) -> int:
        if mode not in AUTONOMOUS_MODES:
            return 0
        value = max(0, self.backpressure_for(mode) + delta)
        self.backpressure[mode] = value
        return value


# --- Executor interface ---

@dataclass(frozen=True)
class ResearchCandidate:
    name: str
    archetype_name: str
    hypothesis: str
    rules: dict = field(default_factory=dict)
    regime: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "archetype_name": self.archetype_name,
            "hypothesis": self.hypothesis,
            "rules": self.rules,
            "regime": self.regime,
        }


@dataclass
class ResearchDiagnostics:
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    model: str = ""

    @property
    def tokens_used(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class ResearchRequest:
    mode: ResearchMode
    context: dict
    job_id: str = ""


@dataclass
class ResearchResult:
    candidates: list[ResearchCandidate] = field(default_factory=list)
    diagnostics: ResearchDiagnostics = field(default_factory=ResearchDiagnostics)
    error: Optional[str] = None


class ResearchExecutor:
    """Runs one research call for a single (non FULL_SPECTRUM) mode.

    Implementations MUST report cost in diagnostics, and either raise or set
    ``error`` on failure. Both are treated the same by the dispatcher.
    """

    async def research(self, request: ResearchRequest) -> ResearchResult:
        raise NotImplementedError


class CandidateSink:
    """Receives de-duplicated candidates. Returns the stored candidate id."""

    async def submit(
        self,
        candidate: ResearchCandidate,
        job: ResearchJob,
        fingerprint_hash: str,
    ) -> str | None:
        raise NotImplementedError

    async def recent(self, limit: int = 20) -> list[dict]:
        """Recently accepted candidates, passed to executors as history."""
        return []
