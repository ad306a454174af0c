import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from src.bridge.commands import BackendResult
from src.controllers.timeline import TranscriptTimelineAggregator
from src.core.event_contracts import RecordingStatsUpdated
from src.core.records import AggregateStats
from src.state import SignalKind

NOW = datetime(2026, 10, 14, 15, 30, tzinfo=timezone.utc)


def _ts(delta: timedelta) -> float:
    return (NOW - delta).timestamp() * 1000


class _FakeHistory:
    def __init__(self):
        self.rows = [
            {"id": "t1", "text": "first note", "timestamp": _ts(timedelta(hours=1)), "word_count": 2},
            {"id": "t2", "text": "", "timestamp": _ts(timedelta(hours=2))},
            {"id": "t3", "text": "older note", "timestamp": _ts(timedelta(days=1, hours=2)), "word_count": 2},
        ]

    def install(self, transport):
        transport.handlers.update(
            {
                "get_transcripts": lambda: BackendResult.ok(list(self.rows)),
                "get_transcript_stats": self._stats,
                "delete_transcript": self._delete,
            }
        )

    def _stats(self):
        words = sum(row.get("word_count", 0) for row in self.rows)
        return BackendResult.ok({"total_words": words, "total_time_ms": 1000 * words, "overall_wpm": 60.0})

    def _delete(self, id):
        before = len(self.rows)
        self.rows = [row for row in self.rows if row["id"] != id]
        if len(self.rows) == before:
            return BackendResult.fail(f"transcript {id} not found")
        return BackendResult.ok()


@pytest.mark.asyncio
async def test_refresh_loads_list_and_stats(store, commands, transport, clipboard):
    _FakeHistory().install(transport)
    timeline = TranscriptTimelineAggregator(store, commands, clipboard)

    view = await timeline.refresh()

    assert [t.id for t in view.transcripts] == ["t1", "t2", "t3"]
    assert view.stats.total_words == 4
    groups = timeline.groups(now=NOW)
    assert [g.label for g in groups] == ["Today", "Yesterday"]


@pytest.mark.asyncio
async def test_delete_refetches_backend_totals(store, commands, transport, clipboard, signals):
    _FakeHistory().install(transport)
    timeline = TranscriptTimelineAggregator(store, commands, clipboard)
    await timeline.refresh()

    assert await timeline.delete_transcript("t1") is True

    assert [t.id for t in timeline.state.transcripts] == ["t2", "t3"]
    assert timeline.state.stats.total_words == 2
    assert transport.count("get_transcript_stats") == 2
    assert signals[-1].kind is SignalKind.SUCCESS


@pytest.mark.asyncio
async def test_delete_of_missing_transcript_leaves_list_unchanged(store, commands, transport, clipboard, signals):
    _FakeHistory().install(transport)
    timeline = TranscriptTimelineAggregator(store, commands, clipboard)
    await timeline.refresh()
    before = timeline.state

    assert await timeline.delete_transcript("nope") is False

    assert timeline.state == before
    assert transport.count("get_transcripts") == 1
    assert signals[-1].kind is SignalKind.ERROR


@pytest.mark.asyncio
async def test_copy_skips_silence(store, commands, transport, clipboard, signals):
    _FakeHistory().install(transport)
    timeline = TranscriptTimelineAggregator(store, commands, clipboard)
    await timeline.refresh()

    assert timeline.copy_transcript("t2") is False
    assert timeline.copy_transcript("missing") is False
    assert timeline.copy_transcript("t1") is True

    assert clipboard.copied == ["first note"]
    assert signals[-1].kind is SignalKind.SUCCESS


@pytest.mark.asyncio
async def test_failed_fetch_keeps_previous_state(store, commands, transport, clipboard):
    history = _FakeHistory()
    history.install(transport)
    timeline = TranscriptTimelineAggregator(store, commands, clipboard)
    await timeline.refresh()

    transport.handlers["get_transcripts"] = BackendResult.fail("db busy")
    transport.handlers["get_transcript_stats"] = BackendResult.fail("db busy")
    view = await timeline.refresh()

    assert len(view.transcripts) == 3


@pytest.mark.asyncio
async def test_stale_refresh_is_discarded(store, commands, transport, clipboard):
    history = _FakeHistory()
    history.install(transport)
    release = asyncio.Event()
    calls = []

    async def _transcripts():
        calls.append(1)
        snapshot = list(history.rows)
        if len(calls) == 1:
            await release.wait()
        return BackendResult.ok(snapshot)

    transport.handlers["get_transcripts"] = _transcripts
    timeline = TranscriptTimelineAggregator(store, commands, clipboard)

    slow = asyncio.create_task(timeline.refresh())
    await asyncio.sleep(0.01)
    history.rows = history.rows[:1]
    await timeline.refresh()
    release.set()
    await slow

    assert [t.id for t in timeline.state.transcripts] == ["t1"]


@pytest.mark.asyncio
async def test_stats_event_triggers_refetch(store, commands, transport, clipboard):
    _FakeHistory().install(transport)
    timeline = TranscriptTimelineAggregator(store, commands, clipboard)

    await timeline.on_stats_updated(RecordingStatsUpdated(stats=AggregateStats(total_words=999)))

    assert transport.count("get_transcripts") == 1
    assert timeline.state.stats.total_words == 4
