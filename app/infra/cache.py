from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)

EMAIL_CACHE_FLUSH_SECONDS = float(os.getenv("EMAIL_CACHE_FLUSH_SECONDS", "1800"))

EmailLoader = Callable[[str], str]


class UserEmailCache:
    """Process-wide user id -> email map, emptied on a fixed interval.

    Misses fall through to ``loader``; loader errors propagate so the caller
    decides on a fallback value.
    """

    def __init__(self, loader: EmailLoader, *, flush_interval: float = EMAIL_CACHE_FLUSH_SECONDS) -> None:
        self._loader = loader
        self._flush_interval = flush_interval
        self._entries: dict[str, str] = {}
        self._lock = threading.Lock()
        self._stopped = threading.Event()
        self._thread: threading.Thread | None = None

    def get(self, user_id: str) -> str:
        with self._lock:
            email = self._entries.get(user_id)
        if email is not None:
            return email
        email = self._loader(user_id)
        with self._lock:
            self._entries[user_id] = email
        return email

    def clear(self) -> None:
        with self._lock:
            self._entries = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stopped.clear()
        self._thread = threading.Thread(target=self._flush_worker, name="email-cache-flush", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        thread, self._thread = self._thread, None
        if thread is None:
            return
        self._stopped.set()
        thread.join()

    def _flush_worker(self) -> None:
        logger.info("email cache flush worker started")
        while not self._stopped.wait(self._flush_interval):
            self.clear()
            logger.debug("email cache flushed")
        logger.info("email cache flush worker stopped")
