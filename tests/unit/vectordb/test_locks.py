"""Tests for the collection readers-writer lock."""

from __future__ import annotations

import threading
import time

from faiss_vdb.vectordb.locks import ReadWriteLock


def test_readers_share_the_lock() -> None:
    lock = ReadWriteLock()
    inside = threading.Barrier(3, timeout=5)

    def _reader() -> None:
        with lock.read_lock():
            inside.wait()

    threads = [threading.Thread(target=_reader) for _ in range(2)]
    for thread in threads:
        thread.start()
    inside.wait()
    for thread in threads:
        thread.join(timeout=5)

    assert lock.readers == 0


def test_writer_excludes_readers() -> None:
    lock = ReadWriteLock()
    events: list[str] = []
    lock.acquire_write()

    def _reader() -> None:
        with lock.read_lock():
            events.append("read")

    thread = threading.Thread(target=_reader)
    thread.start()
    time.sleep(0.05)
    events.append("write-done")
    lock.release_write()
    thread.join(timeout=5)

    assert events == ["write-done", "read"]


def test_waiting_writer_blocks_new_readers() -> None:
    """A queued writer runs before readers that arrive after it."""
    lock = ReadWriteLock()
    events: list[str] = []
    lock.acquire_read()

    def _writer() -> None:
        with lock.write_lock():
            events.append("write")

    def _late_reader() -> None:
        with lock.read_lock():
            events.append("read")

    writer = threading.Thread(target=_writer)
    writer.start()
    time.sleep(0.05)
    reader = threading.Thread(target=_late_reader)
    reader.start()
    time.sleep(0.05)
    assert events == []

    lock.release_read()
    writer.join(timeout=5)
    reader.join(timeout=5)

    assert events == ["write", "read"]
