"""Candidate slot generation for a single business day."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

DEFAULT_WINDOW_START_HOUR = 9
DEFAULT_WINDOW_END_HOUR = 18
DEFAULT_STEP_MINUTES = 30


@dataclass(frozen=True)
class CandidateSlot:
    start: datetime
    end: datetime


def generate_grid(
    day: date,
    service_duration_minutes: int,
    window_start_hour: int = DEFAULT_WINDOW_START_HOUR,
    window_end_hour: int = DEFAULT_WINDOW_END_HOUR,
    step_minutes: int = DEFAULT_STEP_MINUTES,
) -> list[CandidateSlot]:
    """Return every step-aligned slot that fits entirely inside the window.

    A slot starting at 17:30 for a 60 minute service would close at 18:30 and
    is left out; a service longer than the whole window yields no slots.
    """
    if service_duration_minutes < 1:
        raise ValueError("service_duration_minutes must be at least 1")
    if step_minutes < 1:
        raise ValueError("step_minutes must be at least 1")
    if not 0 <= window_start_hour <= window_end_hour <= 24:
        raise ValueError("window hours must satisfy 0 <= start <= end <= 24")

    opening = datetime.combine(day, time.min) + timedelta(hours=window_start_hour)
    closing = datetime.combine(day, time.min) + timedelta(hours=window_end_hour)
    duration = timedelta(minutes=service_duration_minutes)
    step = timedelta(minutes=step_minutes)

    slots = []
    current = opening
    while current < closing and current + duration <= closing:
        slots.append(CandidateSlot(start=current, end=current + duration))
        current += step
    return slots
