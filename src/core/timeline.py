from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable, Optional

from src.core.records import Transcript

TODAY_LABEL = "Today"
YESTERDAY_LABEL = "Yesterday"


@dataclass(frozen=True)
class TranscriptGroup:
    label: str
    day: date
    transcripts: tuple[Transcript, ...]

    def to_public(self) -> dict:
        return {
            "label": self.label,
            "day": self.day.isoformat(),
            "transcripts": [t.to_public() for t in self.transcripts],
        }


def format_day_label(day: date) -> str:
    """Full calendar label, e.g. 'Monday, October 12, 2026'."""
    return f"{day:%A}, {day:%B} {day.day}, {day.year}"


def group_transcripts(
    transcripts: Iterable[Transcript],
    *,
    now: Optional[datetime] = None,
) -> list[TranscriptGroup]:
    """Bucket transcripts into Today / Yesterday / calendar-day groups, newest first."""
    now = now or datetime.now().astimezone()
    tz = now.tzinfo
    today = now.date()
    yesterday = today - timedelta(days=1)
    # Boundaries are computed once per pass so every transcript sees the same midnight.
    today_start = datetime.combine(today, time.min, tzinfo=tz)
    yesterday_start = datetime.combine(yesterday, time.min, tzinfo=tz)

    buckets: dict[date, list[Transcript]] = {}
    for transcript in transcripts:
        stamp = datetime.fromtimestamp(transcript.timestamp_ms / 1000, tz)
        if stamp >= today_start:
            day = today
        elif stamp >= yesterday_start:
            day = yesterday
        else:
            day = stamp.date()
        buckets.setdefault(day, []).append(transcript)

    groups: list[TranscriptGroup] = []
    for day in sorted(buckets, reverse=True):
        if day == today:
            label = TODAY_LABEL
        elif day == yesterday:
            label = YESTERDAY_LABEL
        else:
            label = format_day_label(day)
        ordered = sorted(buckets[day], key=lambda t: t.timestamp_ms, reverse=True)
        groups.append(TranscriptGroup(label=label, day=day, transcripts=tuple(ordered)))
    return groups
