from __future__ import annotations

from dataclasses import dataclass
from datetime import time
from typing import Optional

MINUTES_PER_DAY = 24 * 60


@dataclass(frozen=True, order=True)
class TimeWindow:
    """Half-open ``[start, end)`` window in minutes since midnight."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.start < 0 or self.end <= self.start:
            raise ValueError(f"invalid window [{self.start}, {self.end})")

    @classmethod
    def at(cls, start: time, duration_minutes: int) -> "TimeWindow":
        begin = start.hour * 60 + start.minute
        return cls(begin, begin + duration_minutes)

    @classmethod
    def between(cls, start: time, end: time) -> "TimeWindow":
        return cls(start.hour * 60 + start.minute, end.hour * 60 + end.minute)

    @property
    def duration(self) -> int:
        return self.end - self.start

    @property
    def start_time(self) -> time:
        return minute_to_time(self.start)

    @property
    def end_time(self) -> Optional[time]:
        # A window may end exactly at midnight
        return None if self.end >= MINUTES_PER_DAY else minute_to_time(self.end)

    def overlaps(self, other: "TimeWindow") -> bool:
        return windows_overlap(self, other)

    def contains(self, other: "TimeWindow") -> bool:
        return self.start <= other.start and other.end <= self.end

    def label(self) -> str:
        return f"{self.start // 60:02d}:{self.start % 60:02d}-{self.end // 60:02d}:{self.end % 60:02d}"


def windows_overlap(a: TimeWindow, b: TimeWindow) -> bool:
    return a.start < b.end and b.start < a.end


def minute_to_time(minute: int) -> time:
    return time(minute // 60, minute % 60)
