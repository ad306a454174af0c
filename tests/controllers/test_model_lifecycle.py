import asyncio

import pytest

from src.bridge.commands import BackendResult
from src.controllers.models import ModelLifecycleManager
from src.core.error_taxonomy import BackendRequestFailed, PreconditionNotMet
from src.core.event_contracts import ModelDownloadComplete, ModelDownloadProgress
from src.state import SignalKind

RECOMMENDED = "large-v3-turbo-q8_0"

CATALOG = [
    {"id": "base", "name": "Base", "size_mb": 142, "description": "Fast"},
    {"id": RECOMMENDED, "name": "Large v3 Turbo", "size_mb": 874, "description": "Accurate"},
    {"id": "small", "name": "Small", "size_mb": 466, "description": "Balanced"},
]


class _FakeModelBackend:
    def __init__(self, *, selected=None, downloaded=()):
        self.selected = selected
        self.downloaded = list(downloaded)

    def install(self, transport):
        transport.handlers.update(
            {
                "get_available_models": BackendResult.ok(CATALOG),
                "get_downloaded_models": lambda: BackendResult.ok(list(self.downloaded)),
                "get_selected_model": lambda: BackendResult.ok(self.selected),
                "set_selected_model": self._set_selected,
                "download_model": BackendResult.ok(),
            }
        )

    def _set_selected(self, model_id):
        self.selected = model_id
        return BackendResult.ok()


def _manager(store, commands):
    return ModelLifecycleManager(store, commands, recommended_id=RECOMMENDED)


@pytest.mark.asyncio
async def test_first_run_auto_selects_recommended_once(store, commands, transport):
    backend = _FakeModelBackend()
    backend.install(transport)
    manager = _manager(store, commands)

    view = await manager.initialize()
    assert view.selected_id == RECOMMENDED
    assert view.is_downloaded_currently is False
    assert [e.id for e in view.catalog if e.is_recommended] == [RECOMMENDED]

    # A restart sees the persisted selection and does not write it again.
    await _manager(store, commands).initialize()
    assert transport.args_for("set_selected_model") == [{"model_id": RECOMMENDED}]


@pytest.mark.asyncio
async def test_existing_selection_is_kept(store, commands, transport):
    _FakeModelBackend(selected="small", downloaded=["small"]).install(transport)
    manager = _manager(store, commands)

    view = await manager.initialize()

    assert view.selected_id == "small"
    assert view.is_downloaded_currently is True
    assert transport.count("set_selected_model") == 0


@pytest.mark.asyncio
async def test_failed_selection_fetch_does_not_auto_select(store, commands, transport):
    _FakeModelBackend().install(transport)
    transport.handlers["get_selected_model"] = BackendResult.fail("db locked")
    manager = _manager(store, commands)

    view = await manager.initialize()

    assert view.selected_id is None
    assert transport.count("set_selected_model") == 0


@pytest.mark.asyncio
async def test_recommended_missing_from_catalog_leaves_selection_empty(store, commands, transport):
    _FakeModelBackend().install(transport)
    transport.handlers["get_available_models"] = BackendResult.ok(CATALOG[:1])
    manager = _manager(store, commands)

    view = await manager.initialize()

    assert view.selected_id is None
    assert transport.count("set_selected_model") == 0


@pytest.mark.asyncio
async def test_auto_select_persist_failure_keeps_local_selection(store, commands, transport):
    _FakeModelBackend().install(transport)
    transport.handlers["set_selected_model"] = BackendResult.fail("read-only store")
    manager = _manager(store, commands)

    view = await manager.initialize()

    assert view.selected_id == RECOMMENDED


@pytest.mark.asyncio
async def test_select_model_derives_downloaded_flag(store, commands, transport):
    _FakeModelBackend(selected="base", downloaded=["small"]).install(transport)
    manager = _manager(store, commands)
    await manager.initialize()
    assert manager.state.is_downloaded_currently is False

    view = await manager.select_model("small")

    assert view.selected_id == "small"
    assert view.is_downloaded_currently is True
    assert transport.args_for("set_selected_model") == [{"model_id": "small"}]


@pytest.mark.asyncio
async def test_select_unknown_model_is_refused(store, commands, transport):
    _FakeModelBackend(selected="base").install(transport)
    manager = _manager(store, commands)
    await manager.initialize()

    with pytest.raises(PreconditionNotMet):
        await manager.select_model("tiny")
    assert transport.count("set_selected_model") == 0


@pytest.mark.asyncio
async def test_select_rolls_back_when_backend_fails(store, commands, transport):
    _FakeModelBackend(selected="base").install(transport)
    transport.handlers["set_selected_model"] = BackendResult.fail("nope")
    manager = _manager(store, commands)
    await manager.initialize()

    with pytest.raises(BackendRequestFailed):
        await manager.select_model("small")
    assert manager.state.selected_id == "base"


@pytest.mark.asyncio
async def test_download_lifecycle(store, commands, transport, signals):
    backend = _FakeModelBackend(selected="small")
    backend.install(transport)
    manager = _manager(store, commands)
    await manager.initialize()

    view = await manager.download_selected_model()
    assert view.is_downloading is True
    assert view.progress == 0.0
    await manager._request_task

    with pytest.raises(PreconditionNotMet):
        await manager.select_model("base")
    with pytest.raises(PreconditionNotMet):
        await manager.download_selected_model()

    manager.on_download_progress(ModelDownloadProgress(progress=40.0, downloaded_bytes=40, total_bytes=100))
    assert manager.state.progress == 40.0
    manager.on_download_progress(ModelDownloadProgress(progress=140.0, downloaded_bytes=140, total_bytes=100))
    assert manager.state.progress == 100.0
    manager.on_download_progress(ModelDownloadProgress(progress=-3.0, downloaded_bytes=0, total_bytes=100))
    assert manager.state.progress == 0.0

    backend.downloaded = ["small"]
    before = transport.count("get_downloaded_models")
    await manager.on_download_complete(ModelDownloadComplete(success=True))

    assert manager.state.is_downloading is False
    assert manager.state.is_downloaded_currently is True
    assert transport.count("get_downloaded_models") == before + 1
    assert signals[-1].kind is SignalKind.SUCCESS
    assert "progress" not in manager.state.to_public()


@pytest.mark.asyncio
async def test_completion_without_progress_still_clears_downloading(store, commands, transport):
    backend = _FakeModelBackend(selected="small")
    backend.install(transport)
    manager = _manager(store, commands)
    await manager.initialize()
    await manager.download_selected_model()
    await manager._request_task

    backend.downloaded = ["small"]
    await manager.on_download_complete(ModelDownloadComplete(success=True))

    assert manager.state.is_downloading is False
    assert manager.state.is_downloaded_currently is True


@pytest.mark.asyncio
async def test_failed_completion_event_clears_downloading(store, commands, transport, signals):
    _FakeModelBackend(selected="small").install(transport)
    manager = _manager(store, commands)
    await manager.initialize()
    await manager.download_selected_model()
    await manager._request_task

    await manager.on_download_complete(ModelDownloadComplete(success=False, error="checksum mismatch"))

    assert manager.state.is_downloading is False
    assert manager.state.last_error == "checksum mismatch"
    assert manager.state.is_downloaded_currently is False
    assert signals[-1].kind is SignalKind.ERROR


@pytest.mark.asyncio
async def test_rejected_download_request_clears_downloading(store, commands, transport):
    _FakeModelBackend(selected="small").install(transport)
    transport.handlers["download_model"] = BackendResult.fail("disk full")
    manager = _manager(store, commands)
    await manager.initialize()

    await manager.download_selected_model()
    await manager._request_task

    assert manager.state.is_downloading is False
    assert manager.state.last_error == "disk full"


@pytest.mark.asyncio
async def test_download_requires_selection(store, commands, transport):
    _FakeModelBackend().install(transport)
    transport.handlers["get_available_models"] = BackendResult.ok([])
    manager = _manager(store, commands)
    await manager.initialize()

    with pytest.raises(PreconditionNotMet):
        await manager.download_selected_model()
    assert transport.count("download_model") == 0


def test_progress_outside_download_is_ignored(store, commands):
    manager = _manager(store, commands)
    manager.on_download_progress(ModelDownloadProgress(progress=50.0, downloaded_bytes=5, total_bytes=10))
    assert manager.state.progress == 0.0


@pytest.mark.asyncio
async def test_shutdown_cancels_pending_download_request(store, commands, transport, signals):
    _FakeModelBackend(selected="base").install(transport)
    answered = []

    async def _hanging_download(model_id):
        await asyncio.sleep(10)
        answered.append(model_id)
        return BackendResult.fail("disk full")

    transport.handlers["download_model"] = _hanging_download
    manager = _manager(store, commands)
    await manager.initialize()
    await manager.download_selected_model()
    await asyncio.sleep(0.01)
    assert transport.count("download_model") == 1

    await manager.shutdown()
    await manager.shutdown()

    assert answered == []
    assert manager.state.last_error is None
    assert [s for s in signals if s.kind is SignalKind.ERROR] == []
