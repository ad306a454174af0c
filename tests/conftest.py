import asyncio
import os
import sys

import pytest

# Ensure project root is on sys.path so `import src` works when running tests
PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from src.bridge.commands import BackendCommands, BackendResult  # noqa: E402
from src.state import StateStore  # noqa: E402


class FakeTransport:
    """In-memory backend: `handlers[command]` is a BackendResult, a callable, or an async callable."""

    def __init__(self, handlers=None):
        self.handlers = dict(handlers or {})
        self.calls: list[tuple[str, dict]] = []

    def count(self, command: str) -> int:
        return sum(1 for name, _ in self.calls if name == command)

    def args_for(self, command: str) -> list[dict]:
        return [args for name, args in self.calls if name == command]

    async def invoke(self, command, args=None):
        args = dict(args or {})
        self.calls.append((command, args))
        handler = self.handlers.get(command)
        if handler is None:
            return BackendResult.fail(f"{command}: not handled")
        if isinstance(handler, BackendResult):
            return handler
        result = handler(**args)
        if asyncio.iscoroutine(result):
            result = await result
        return result

    async def close(self):
        return None


class FakeClipboard:
    def __init__(self, available: bool = True):
        self.available = available
        self.copied: list[str] = []

    def copy(self, text: str) -> bool:
        if not text or not self.available:
            return False
        self.copied.append(text)
        return True


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def commands(transport):
    return BackendCommands(transport)


@pytest.fixture
def store():
    return StateStore()


@pytest.fixture
def clipboard():
    return FakeClipboard()


@pytest.fixture
def healthy_backend(transport):
    """Permissions granted, the recommended model selected and downloaded, one transcript on file."""
    transport.handlers.update(
        {
            "check_permissions": BackendResult.ok({"microphone": True, "accessibility": True}),
            "get_available_models": BackendResult.ok(
                [
                    {"id": "base", "name": "Base", "size_mb": 142},
                    {"id": "large-v3-turbo-q8_0", "name": "Large v3 Turbo", "size_mb": 874},
                ]
            ),
            "get_downloaded_models": BackendResult.ok(["large-v3-turbo-q8_0"]),
            "get_selected_model": BackendResult.ok("large-v3-turbo-q8_0"),
            "set_selected_model": BackendResult.ok(),
            "download_model": BackendResult.ok(),
            "get_transcripts": BackendResult.ok(
                [{"id": "t1", "text": "hello there", "timestamp": 1_760_000_000_000, "word_count": 2}]
            ),
            "get_transcript_stats": BackendResult.ok({"total_words": 2, "total_time_ms": 1000, "overall_wpm": 120}),
            "delete_transcript": BackendResult.ok(),
            "get_audio_devices": BackendResult.ok([{"id": "builtin", "name": "Built-in", "is_default": True}]),
            "get_current_device": BackendResult.ok("builtin"),
            "set_recording_device": BackendResult.ok(),
            "get_word_count": BackendResult.ok(2),
            "get_hotkey": BackendResult.ok("rightOption"),
            "set_hotkey": BackendResult.ok(),
            "request_microphone_permission": BackendResult.ok(True),
            "request_accessibility_permission": BackendResult.ok(True),
            "start_recording": BackendResult.ok(),
            "stop_recording": BackendResult.ok("hello there"),
        }
    )
    return transport


@pytest.fixture
def signals(store):
    received = []
    store.subscribe_signals(received.append)
    return received
