import asyncio

import pytest

from src.runtime.race import race_with_timeout


@pytest.mark.asyncio
async def test_value_wins_before_timeout():
    async def _quick():
        return "done"

    outcome = await race_with_timeout(_quick(), 1.0, label="quick")
    assert outcome.timed_out is False
    assert outcome.value == "done"


@pytest.mark.asyncio
async def test_timeout_wins_and_late_result_is_not_cancelled():
    release = asyncio.Event()
    finished: list[str] = []
    late: list[tuple] = []

    async def _slow():
        await release.wait()
        finished.append("slow")
        return "late text"

    outcome = await race_with_timeout(
        _slow(),
        0.01,
        label="slow",
        on_late=lambda value, exc: late.append((value, exc)),
    )
    assert outcome.timed_out is True
    assert outcome.value is None

    release.set()
    await asyncio.sleep(0.01)
    assert finished == ["slow"]
    assert late == [("late text", None)]


@pytest.mark.asyncio
async def test_late_failure_reaches_hook():
    release = asyncio.Event()
    late: list[tuple] = []

    async def _slow_fail():
        await release.wait()
        raise RuntimeError("backend crashed")

    outcome = await race_with_timeout(_slow_fail(), 0.01, on_late=lambda v, e: late.append((v, e)))
    assert outcome.timed_out is True

    release.set()
    await asyncio.sleep(0.01)
    assert len(late) == 1
    assert late[0][0] is None
    assert isinstance(late[0][1], RuntimeError)


@pytest.mark.asyncio
async def test_early_exception_propagates():
    async def _boom():
        raise ValueError("bad")

    with pytest.raises(ValueError):
        await race_with_timeout(_boom(), 1.0)
