"""Scheduler — decides which research modes are due.

Pure functions of (state, now): no IO, no clock reads. A mode is due when
its effective cooldown has elapsed since its last run (floored to the
minute, so tick jitter does not push a run past its slot) and, for
slot-aligned modes, the local minute falls inside one of its slots.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable
from zoneinfo import ZoneInfo

from research_brain.shell.clock import floor_minute
from research_brain.shell.contract import (
    AUTONOMOUS_MODES,
    ModePolicy,
    OrchestratorState,
    ResearchMode,
)

# Slots repeat hourly, so one day always contains the next opening.
_MAX_SEARCH_MINUTES = 24 * 60


@dataclass(frozen=True)
class ModeDecision:
    mode: ResearchMode
    due: bool
    reason: str
    next_eligible_at: datetime | None


@dataclass(frozen=True)
class PlannedJob:
    mode: ResearchMode
    sub_modes: tuple[ResearchMode, ...] = ()


class Scheduler:
    def __init__(self, policies: dict[ResearchMode, ModePolicy], tz_name: str = "UTC") -> None:
        self._policies = policies
        self._tz = ZoneInfo(tz_name)

    def policy(self, mode: ResearchMode) -> ModePolicy:
        return self._policies[mode]

    def effective_cooldown(self, mode: ResearchMode, state: OrchestratorState) -> timedelta:
        p = self._policies[mode]
        bp = state.backpressure_for(mode)
        return timedelta(minutes=p.cooldown_minutes + bp * p.backpressure_penalty_minutes)

    def in_slot(self, mode: ResearchMode, when: datetime) -> bool:
        p = self._policies[mode]
        if not p.is_slot_aligned:
            return True
        minute = when.astimezone(self._tz).minute
        return any((minute - slot) % 60 < p.slot_window_minutes for slot in p.slot_minutes)

    def cooldown_ends(self, mode: ResearchMode, state: OrchestratorState) -> datetime | None:
        last = state.last_run_at(mode)
        if last is None:
            return None
        return floor_minute(last) + self.effective_cooldown(mode, state)

    def next_eligible_at(
        self,
        mode: ResearchMode,
        state: OrchestratorState,
        now: datetime,
    ) -> datetime | None:
        """Earliest instant >= now at which the mode is due. None while blocked by backpressure."""
        p = self._policies[mode]
        if state.backpressure_for(mode) > p.backpressure_ceiling:
            return None
        ends = self.cooldown_ends(mode, state)
        candidate = now if ends is None or ends <= now else ends
        if self.in_slot(mode, candidate):
            return candidate
        t = floor_minute(candidate) + timedelta(minutes=1)
        for _ in range(_MAX_SEARCH_MINUTES):
            if self.in_slot(mode, t):
                return t
            t += timedelta(minutes=1)
        return None

    def evaluate(self, mode: ResearchMode, state: OrchestratorState, now: datetime) -> ModeDecision:
        p = self._policies[mode]
        bp = state.backpressure_for(mode)
        if bp > p.backpressure_ceiling:
            return ModeDecision(mode, False, f"backpressure {bp} above ceiling {p.backpressure_ceiling}", None)

        ends = self.cooldown_ends(mode, state)
        if ends is not None and now < ends:
            return ModeDecision(mode, False, "cooldown", self.next_eligible_at(mode, state, now))
        if not self.in_slot(mode, now):
            return ModeDecision(mode, False, "outside slot", self.next_eligible_at(mode, state, now))
        return ModeDecision(mode, True, "due", now)

    def due_modes(
        self,
        state: OrchestratorState,
        now: datetime,
        busy: Iterable[ResearchMode] = (),
    ) -> list[ResearchMode]:
        """Autonomous modes due now, highest priority first. Busy modes are skipped."""
        busy = set(busy)
        due = [
            mode for mode in AUTONOMOUS_MODES
            if mode not in busy and self.evaluate(mode, state, now).due
        ]
        return sorted(due, key=lambda m: -self._policies[m].priority)

    def plan(
        self,
        state: OrchestratorState,
        now: datetime,
        busy: Iterable[ResearchMode] = (),
    ) -> list[PlannedJob]:
        """Jobs to enqueue this tick.

        With full spectrum enabled, two or more due modes collapse into one
        FULL_SPECTRUM job carrying them as sub-modes.
        """
        due = self.due_modes(state, now, busy)
        if state.is_full_spectrum_enabled and len(due) >= 2:
            return [PlannedJob(ResearchMode.FULL_SPECTRUM, tuple(due))]
        return [PlannedJob(mode) for mode in due]
