from datetime import date, datetime, timedelta, timezone

from src.core.records import Transcript
from src.core.timeline import (
    TODAY_LABEL,
    YESTERDAY_LABEL,
    format_day_label,
    group_transcripts,
)

UTC = timezone.utc
NOW = datetime(2026, 10, 14, 15, 30, tzinfo=UTC)


def _at(dt: datetime, tid: str) -> Transcript:
    return Transcript(id=tid, text=f"text {tid}", timestamp_ms=dt.timestamp() * 1000)


def test_groups_today_yesterday_and_older_newest_first():
    items = [
        _at(NOW - timedelta(days=5), "old"),
        _at(NOW - timedelta(hours=1), "today-late"),
        _at(datetime(2026, 10, 14, 0, 0, tzinfo=UTC), "today-midnight"),
        _at(datetime(2026, 10, 13, 23, 59, tzinfo=UTC), "yesterday"),
        _at(NOW - timedelta(days=5, hours=1), "old-earlier"),
    ]

    groups = group_transcripts(items, now=NOW)

    assert [g.label for g in groups] == [TODAY_LABEL, YESTERDAY_LABEL, "Friday, October 9, 2026"]
    assert [t.id for t in groups[0].transcripts] == ["today-late", "today-midnight"]
    assert [t.id for t in groups[1].transcripts] == ["yesterday"]
    assert [t.id for t in groups[2].transcripts] == ["old", "old-earlier"]


def test_grouping_is_idempotent():
    items = [_at(NOW - timedelta(hours=h), f"t{h}") for h in (1, 20, 30, 80)]
    first = group_transcripts(items, now=NOW)
    second = group_transcripts(items, now=NOW)
    assert first == second


def test_empty_input_has_no_groups():
    assert group_transcripts([], now=NOW) == []


def test_format_day_label():
    assert format_day_label(date(2026, 10, 12)) == "Monday, October 12, 2026"
