"""Labels and widths the rendering surface shows as-is."""
from __future__ import annotations

from datetime import datetime, tzinfo
from typing import Optional

# Push-to-talk keys the backend listener understands.
HOTKEY_OPTIONS: dict[str, str] = {
    "rightOption": "Right Option (⌥)",
    "leftOption": "Left Option (⌥)",
    "leftControl": "Left Control (⌃)",
    "rightControl": "Right Control (⌃)",
    "fn": "Fn",
    "rightCommand": "Right Command (⌘)",
    "rightShift": "Right Shift (⇧)",
}


def hotkey_label(hotkey: Optional[str]) -> str:
    if not hotkey:
        return "Not set"
    return HOTKEY_OPTIONS.get(hotkey, hotkey)


def format_elapsed(seconds: float) -> str:
    total = max(0, int(seconds))
    minutes, secs = divmod(total, 60)
    return f"{minutes}:{secs:02d}"


def format_bytes(num_bytes: float) -> str:
    if not num_bytes:
        return "0 MB"
    return f"{num_bytes / (1024 * 1024):.1f} MB"


def progress_bar_width(progress: float) -> float:
    """Bar width in percent: 0 until the first real progress, then at least 2."""
    if progress <= 0:
        return 0.0
    return max(2.0, min(100.0, float(progress)))


def format_time_of_day(timestamp_ms: float, tz: Optional[tzinfo] = None) -> str:
    stamp = datetime.fromtimestamp(timestamp_ms / 1000, tz)
    hour = stamp.hour % 12 or 12
    suffix = "AM" if stamp.hour < 12 else "PM"
    return f"{hour}:{stamp.minute:02d} {suffix}"
