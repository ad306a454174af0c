from typing import Protocol

import pyperclip
from loguru import logger


class Clipboard(Protocol):
    def copy(self, text: str) -> bool:
        ...


class SystemClipboard:
    """Places transcribed text on the OS clipboard."""

    def copy(self, text: str) -> bool:
        if not text:
            return False
        try:
            pyperclip.copy(text)
        except pyperclip.PyperclipException as e:
            # Headless sessions have no clipboard mechanism.
            logger.error(f"Clipboard copy failed: {e}")
            return False
        logger.debug(f"Copied {len(text)} characters to clipboard")
        return True
