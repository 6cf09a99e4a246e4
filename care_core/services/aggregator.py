"""
Time-window aggregation over an enrollment's observations of one metric.

Two aggregation modes feed the rule evaluator:
- Occurrence counting: observations in the window satisfying an instant predicate
- Consecutive-day checking: an unbroken run of calendar days (the patient's
  recorded day) each holding at least one satisfying observation, ending on the
  most recent qualifying day

Trend runs are computed here as well: the trailing strictly-monotonic run of
values ending at the latest observation in the window.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

import structlog

from care_core.domain.conditions import ConditionBase
from care_core.domain.models import Observation
from care_core.services.stores import ObservationStore

logger = structlog.get_logger(__name__)

Predicate = Callable[[Observation], bool]


@dataclass(frozen=True)
class WindowSlice:
    """Observations that fall inside an evaluation window, oldest first."""

    observations: tuple[Observation, ...]
    start: datetime | None
    end: datetime

    @property
    def latest(self) -> Observation | None:
        return self.observations[-1] if self.observations else None


@dataclass(frozen=True)
class DayStreak:
    """Unbroken run of qualifying days ending on the most recent qualifying day."""

    days: int
    last_day: date | None
    matches: tuple[Observation, ...] = field(default=())


@dataclass(frozen=True)
class TrendRun:
    """Trailing strictly-monotonic run; `steps` counts rises (or falls) in a row."""

    steps: int
    observations: tuple[Observation, ...] = field(default=())


def select_window(
    observations: Sequence[Observation], condition: ConditionBase, now: datetime
) -> WindowSlice:
    """Restrict observations (any order) to the condition's window ending at `now`."""
    ordered = sorted(
        (obs for obs in observations if obs.recorded_at <= now), key=lambda obs: obs.recorded_at
    )
    if condition.is_immediate:
        return WindowSlice(observations=tuple(ordered[-1:]), start=None, end=now)

    window = condition.window
    start = now - window if window is not None else None
    if start is not None:
        ordered = [obs for obs in ordered if obs.recorded_at >= start]
    return WindowSlice(observations=tuple(ordered), start=start, end=now)


def matching_observations(window: WindowSlice, predicate: Predicate) -> list[Observation]:
    return [obs for obs in window.observations if predicate(obs)]


def consecutive_day_streak(window: WindowSlice, predicate: Predicate) -> DayStreak:
    qualifying: dict[date, list[Observation]] = {}
    for obs in window.observations:
        if predicate(obs):
            qualifying.setdefault(obs.recorded_day, []).append(obs)

    if not qualifying:
        return DayStreak(days=0, last_day=None)

    last_day = max(qualifying)
    day = last_day
    matches: list[Observation] = []
    while day in qualifying:
        matches = qualifying[day] + matches
        day -= timedelta(days=1)

    return DayStreak(days=(last_day - day).days, last_day=last_day, matches=tuple(matches))


def trailing_trend_run(window: WindowSlice, increasing: bool) -> TrendRun:
    numeric = [obs for obs in window.observations if obs.numeric_value() is not None]
    if len(numeric) < 2:
        return TrendRun(steps=0, observations=tuple(numeric))

    values = [float(obs.numeric_value() or 0.0) for obs in numeric]
    steps = 0
    for prev_value, cur_value in zip(reversed(values[:-1]), reversed(values[1:]), strict=True):
        moved = cur_value > prev_value if increasing else cur_value < prev_value
        if not moved:
            break
        steps += 1

    return TrendRun(steps=steps, observations=tuple(numeric[-(steps + 1) :]))


class TimeWindowAggregator:
    """Loads (enrollment, metric) observation windows from the observation store."""

    def __init__(self, observations: ObservationStore) -> None:
        self.observations = observations
        self.logger = logger.bind(component="time_window_aggregator")

    async def load_window(
        self, enrollment_id: str, metric_key: str, condition: ConditionBase, now: datetime
    ) -> WindowSlice:
        window = condition.window
        since = now - window if window is not None and not condition.is_immediate else None
        rows = await self.observations.list_observations(
            enrollment_id, metric_key=metric_key, since=since, until=now
        )
        selected = select_window(rows, condition, now)
        self.logger.debug(
            "window_loaded",
            enrollment_id=enrollment_id,
            metric_key=metric_key,
            observations=len(selected.observations),
            window=condition.window_spec or "immediate",
        )
        return selected

    async def latest_observation(
        self, enrollment_id: str, metric_key: str | None, now: datetime
    ) -> Observation | None:
        rows = await self.observations.list_observations(
            enrollment_id, metric_key=metric_key, until=now
        )
        return max(rows, key=lambda obs: obs.recorded_at, default=None)
