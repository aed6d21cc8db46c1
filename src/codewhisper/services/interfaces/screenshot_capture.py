"""Abstract interface for OS screenshot capture."""

from abc import ABC, abstractmethod
from typing import Optional


class ScreenshotCapture(ABC):
    """Interface for capturing the screen as PNG bytes."""

    @abstractmethod
    async def capture_full_screen(self) -> bytes:
        """Capture the main display."""
        pass

    @abstractmethod
    async def capture_window(self, app_name: Optional[str] = None, window_title: Optional[str] = None) -> bytes:
        """Capture a single window, matched by application name and/or title.

        With neither given, captures the frontmost window.
        """
        pass
