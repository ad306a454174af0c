from __future__ import annotations

import asyncio
from typing import Any, Optional

from loguru import logger

from src.bridge.commands import BackendCommands, BackendResult
from src.config import Config
from src.core.error_taxonomy import BackendRequestFailed, ErrorCategory, PreconditionNotMet
from src.core.event_contracts import ModelDownloadComplete, ModelDownloadProgress
from src.core.logging_setup import emit_event
from src.core.records import ModelCatalogEntry
from src.state import MODELS, ModelView, Signal, SignalKind, StateStore

_log = logger.bind(component="models")


def clamp_progress(progress: float) -> float:
    return max(0.0, min(100.0, float(progress)))


def _parse_catalog(data: Any, *, recommended_id: str) -> tuple[ModelCatalogEntry, ...]:
    if not isinstance(data, list):
        raise ValueError("model catalog must be a list")
    entries: list[ModelCatalogEntry] = []
    seen: set[str] = set()
    for item in data:
        if not isinstance(item, dict):
            _log.warning(f"Skipping malformed catalog entry: {item!r}")
            continue
        try:
            entry = ModelCatalogEntry.from_payload(item, recommended_id=recommended_id)
        except ValueError as exc:
            _log.warning(f"Skipping malformed catalog entry: {exc}")
            continue
        if entry.id in seen:
            continue
        seen.add(entry.id)
        entries.append(entry)
    return tuple(entries)


def _parse_downloaded(data: Any) -> frozenset[str]:
    if not isinstance(data, list):
        raise ValueError("downloaded models must be a list")
    ids: set[str] = set()
    for item in data:
        if isinstance(item, str):
            ids.add(item)
        elif isinstance(item, dict) and isinstance(item.get("id"), str):
            ids.add(item["id"])
    return frozenset(ids)


class ModelLifecycleManager:
    """Tracks the model catalog, the downloaded set and the current selection.

    Download progress and completion arrive only through backend events; the
    download request's own response is used solely to detect a failed start.
    """

    def __init__(
        self,
        store: StateStore,
        commands: BackendCommands,
        *,
        recommended_id: Optional[str] = None,
    ):
        self._store = store
        self._writer = store.claim(MODELS, owner="model_lifecycle")
        self._commands = commands
        self._recommended_id = recommended_id or Config.RECOMMENDED_MODEL_ID
        self._download_generation = 0
        self._request_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> ModelView:
        return self._writer.value

    @property
    def recommended_id(self) -> str:
        return self._recommended_id

    async def initialize(self) -> ModelView:
        catalog_res, downloaded_res, selected_res = await asyncio.gather(
            self._commands.get_available_models(),
            self._commands.get_downloaded_models(),
            self._commands.get_selected_model(),
        )

        changes: dict[str, Any] = {}
        if catalog_res.is_ok:
            try:
                changes["catalog"] = _parse_catalog(catalog_res.data, recommended_id=self._recommended_id)
            except ValueError as exc:
                _log.warning(f"Model catalog unusable: {exc}")
        else:
            _log.warning(f"Could not fetch model catalog: {catalog_res.error}")

        if downloaded_res.is_ok:
            try:
                changes["downloaded_ids"] = _parse_downloaded(downloaded_res.data)
            except ValueError as exc:
                _log.warning(f"Downloaded model list unusable: {exc}")
        else:
            _log.warning(f"Could not fetch downloaded models: {downloaded_res.error}")

        selected: Optional[str] = None
        selection_known = selected_res.is_ok
        if selection_known and isinstance(selected_res.data, str) and selected_res.data:
            selected = selected_res.data
        elif not selection_known:
            _log.warning(f"Could not fetch selected model: {selected_res.error}")

        if selected is not None:
            changes["selected_id"] = selected
        self._writer.update(**changes)

        # Only auto-select when the backend positively reported "no selection".
        if selected is None and selection_known:
            await self._auto_select_recommended()
        return self.state

    async def _auto_select_recommended(self) -> None:
        catalog_ids = [entry.id for entry in self.state.catalog]
        if self._recommended_id not in catalog_ids:
            _log.warning(f"Recommended model {self._recommended_id} missing from catalog; leaving selection empty")
            return
        self._writer.update(selected_id=self._recommended_id)
        result = await self._commands.set_selected_model(self._recommended_id)
        if result.is_ok:
            emit_event(
                _log,
                f"Auto-selected recommended model {self._recommended_id}",
                event="model_auto_selected",
                model_id=self._recommended_id,
            )
        else:
            _log.warning(f"Could not persist recommended model selection: {result.error}")

    async def select_model(self, model_id: str) -> ModelView:
        view = self.state
        if model_id not in {entry.id for entry in view.catalog}:
            raise PreconditionNotMet(f"Unknown model: {model_id}")
        if view.is_downloading:
            raise PreconditionNotMet("Cannot change model while a download is in progress")
        if view.selected_id == model_id:
            return view

        previous = view.selected_id
        # is_downloaded_currently derives from the already-known downloaded set.
        self._writer.update(selected_id=model_id)
        result = await self._commands.set_selected_model(model_id)
        if not result.is_ok:
            if self.state.selected_id == model_id:
                self._writer.update(selected_id=previous)
            raise BackendRequestFailed(result.error or "", command="set_selected_model")
        emit_event(_log, f"Selected model {model_id}", event="model_selected", model_id=model_id)
        return self.state

    async def download_selected_model(self) -> ModelView:
        view = self.state
        if view.selected_id is None:
            raise PreconditionNotMet("No model selected")
        if view.is_downloading:
            raise PreconditionNotMet("A model download is already in progress")

        model_id = view.selected_id
        self._download_generation += 1
        generation = self._download_generation
        self._writer.update(
            is_downloading=True,
            progress=0.0,
            downloaded_bytes=0.0,
            total_bytes=0.0,
            last_error=None,
        )
        emit_event(_log, f"Downloading model {model_id}", event="model_download_started", model_id=model_id)
        self._request_task = asyncio.create_task(
            self._issue_download(model_id, generation),
            name=f"download_model:{model_id}",
        )
        return self.state

    async def _issue_download(self, model_id: str, generation: int) -> None:
        try:
            result = await self._commands.download_model(model_id)
        except Exception as exc:
            result = BackendResult.fail(str(exc))
        if result.is_ok:
            return
        if generation != self._download_generation or not self.state.is_downloading:
            _log.debug(f"Ignoring late download request failure for {model_id}: {result.error}")
            return
        self._fail_download(result.error or "Model download failed")

    async def shutdown(self) -> None:
        """Cancel a download request that is still waiting on the backend."""
        task, self._request_task = self._request_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    def on_download_progress(self, event: ModelDownloadProgress) -> None:
        if not self.state.is_downloading:
            _log.debug("Ignoring download progress outside an active download")
            return
        self._writer.update(
            progress=clamp_progress(event.progress),
            downloaded_bytes=max(0.0, event.downloaded_bytes),
            total_bytes=max(0.0, event.total_bytes),
        )

    async def on_download_complete(self, event: ModelDownloadComplete) -> None:
        was_downloading = self.state.is_downloading
        # Any completion ends the request generation, success or not.
        self._download_generation += 1
        if not event.success:
            if was_downloading:
                self._fail_download(event.error or "Model download failed")
            return

        self._writer.update(is_downloading=False, last_error=None)
        # Re-fetch instead of inserting locally: a download can change more than one entry.
        await self.refresh_downloaded()
        if was_downloading:
            emit_event(
                _log,
                "Model download completed",
                event="model_download_completed",
                model_id=self.state.selected_id,
                outcome="success",
            )
            self._store.emit(Signal(SignalKind.SUCCESS, "Model downloaded and ready"))

    async def refresh_downloaded(self) -> ModelView:
        result = await self._commands.get_downloaded_models()
        if not result.is_ok:
            _log.warning(f"Could not refresh downloaded models: {result.error}")
            return self.state
        try:
            downloaded = _parse_downloaded(result.data)
        except ValueError as exc:
            _log.warning(f"Downloaded model list unusable: {exc}")
            return self.state
        self._writer.update(downloaded_ids=downloaded)
        return self.state

    def _fail_download(self, error: str) -> None:
        self._writer.update(is_downloading=False, last_error=error)
        emit_event(
            _log,
            f"Model download failed: {error}",
            level="WARNING",
            event="model_download_failed",
            model_id=self.state.selected_id,
            outcome="failed",
            error_category=ErrorCategory.BACKEND_REQUEST_FAILED.value,
        )
        self._store.emit(
            Signal(SignalKind.ERROR, f"Model download failed: {error}", ErrorCategory.BACKEND_REQUEST_FAILED.value)
        )
