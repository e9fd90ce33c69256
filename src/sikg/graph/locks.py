"""Reader/writer lock guarding a graph store.

Many readers (scoring, reachability) may hold the lock together; a writer
(change marking, weight updates) holds it alone. The writing thread may
re-enter both read and write sections.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator


class ReadWriteLock:
    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer: int | None = None
        self._writer_depth = 0

    def _acquire_read(self) -> bool:
        me = threading.get_ident()
        with self._cond:
            if self._writer == me:
                self._writer_depth += 1
                return True
            while self._writer is not None:
                self._cond.wait()
            self._readers += 1
            return False

    def _release_read(self, as_writer: bool) -> None:
        with self._cond:
            if as_writer:
                self._writer_depth -= 1
                return
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def _acquire_write(self) -> None:
        me = threading.get_ident()
        with self._cond:
            if self._writer == me:
                self._writer_depth += 1
                return
            while self._writer is not None or self._readers > 0:
                self._cond.wait()
            self._writer = me
            self._writer_depth = 1

    def _release_write(self) -> None:
        with self._cond:
            self._writer_depth -= 1
            if self._writer_depth == 0:
                self._writer = None
                self._cond.notify_all()

    @contextmanager
    def read(self) -> Iterator[None]:
        as_writer = self._acquire_read()
        try:
            yield
        finally:
            self._release_read(as_writer)

    @contextmanager
    def write(self) -> Iterator[None]:
        self._acquire_write()
        try:
            yield
        finally:
            self._release_write()
