"""Counting of consecutive critical errors."""

from __future__ import annotations

import threading
from typing import Callable


class ErrorCounter:
    """Tells when too many consecutive critical errors were seen."""

    def __init__(self, max_errors: int, err_check: Callable[[BaseException], bool]) -> None:
        self._max = max_errors
        self._err_check = err_check
        self._count = 0
        self._lock = threading.Lock()

    def too_many_errs(self, err: BaseException | None) -> bool:
        """Record an outcome; other errors or no error reset the count."""
        with self._lock:
            if err is None or not self._err_check(err):
                self._count = 0
                return False
            self._count += 1
            return self._count >= self._max