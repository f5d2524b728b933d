import logging
import threading
import time
from typing import Callable, Optional

from bs4 import BeautifulSoup

from origin_mask.models import CapturedTextSnapshot

logger = logging.getLogger("uvicorn.error")


def extract_text(html: str, selector: str) -> Optional[str]:
    """Text of the first element matching a CSS selector, whitespace collapsed."""
    soup = BeautifulSoup(html, "html.parser")
    element = soup.select_one(selector)
    if element is None:
        return None
    text = " ".join(element.get_text(" ", strip=True).split())
    return text or None


class CapturedTextCache:
    """
    Single slot holding a short piece of text captured from an upstream page
    or set explicitly by the client.

    A background refresh is started with begin_refresh() and finished with
    complete_refresh() or fail_refresh(). An explicit set_selected() wins over
    a refresh that was already running when it happened.
    """

    def __init__(self, ttl: float = 60, clock: Callable[[], float] = time.time):
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._text: Optional[str] = None
        self._captured_at: Optional[float] = None
        # Failed or empty refreshes also wait a full ttl before the next one
        self._attempted_at: Optional[float] = None
        self._refreshing = False
        self._generation = 0

    def snapshot(self) -> CapturedTextSnapshot:
        with self._lock:
            return CapturedTextSnapshot(
                text=self._text,
                captured_at=self._captured_at,
                refreshing=self._refreshing,
            )

    def is_stale(self) -> bool:
        now = self._clock()
        with self._lock:
            last = max(
                (t for t in (self._captured_at, self._attempted_at) if t is not None),
                default=None,
            )
            if last is None:
                return True
            return now - last >= self.ttl

    def begin_refresh(self) -> Optional[int]:
        """
        Mark a refresh as running.

        Returns a token to pass to complete_refresh(), or None when another
        refresh is already in progress.
        """
        with self._lock:
            if self._refreshing:
                return None
            self._refreshing = True
            return self._generation

    def complete_refresh(self, text: Optional[str], token: int) -> bool:
        """Store refreshed text unless the slot was written since the refresh began."""
        now = self._clock()
        with self._lock:
            self._refreshing = False
            self._attempted_at = now
            if token != self._generation:
                logger.info("[Capture] Discarding refresh result, slot was set meanwhile")
                return False
            if text is None:
                return False
            self._text = text
            self._captured_at = now
            self._generation += 1
            return True

    def fail_refresh(self) -> None:
        now = self._clock()
        with self._lock:
            self._refreshing = False
            self._attempted_at = now

    def set_selected(self, text: str) -> CapturedTextSnapshot:
        now = self._clock()
        with self._lock:
            self._text = text
            self._captured_at = now
            self._generation += 1
            return CapturedTextSnapshot(
                text=self._text,
                captured_at=self._captured_at,
                refreshing=self._refreshing,
            )
