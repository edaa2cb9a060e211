"""
Cooperative cancellation token shared by a job and all of its tile operations.
"""

import threading
from typing import Optional

from chunked_upscaler.core.exceptions import ProcessingCancelled


class CancelToken:
    """
    Thread-safe cancellation flag.

    Work is never interrupted mid-computation; stages poll the token at
    well-defined points (tile entry/exit, phase boundaries) and stop by
    raising ProcessingCancelled.
    """

    def __init__(self):
        self._event = threading.Event()
        self._reason: Optional[str] = None

    def cancel(self, reason: str = "Processing cancelled") -> bool:
        """Signal cancellation. Returns False if the token was already signalled."""
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        return True

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise ProcessingCancelled(self._reason or "Processing cancelled")

    def wait(self, timeout: float) -> bool:
        """Sleep up to `timeout` seconds, waking early on cancellation."""
        return self._event.wait(timeout)
