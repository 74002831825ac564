"""Shared pytest fixtures: temporary trees, a recording change log and fake watch registries."""

import logging
import threading
from pathlib import Path

import pytest

from change_mirror import init_backup


class RecordingLog:
    """In-memory stand-in for the Postgres change log."""

    def __init__(self, fail: bool = False):
        self.entries = []
        self.fail = fail
        self._guard = threading.Lock()

    def insert(self, path, operation, edits=None):
        if self.fail:
            raise RuntimeError("change log unavailable")
        with self._guard:
            self.entries.append((path, operation, edits))

    def ops(self):
        return [op for _, op, _ in self.entries]


class FakeWatches:
    """Records directories handed to watch_new / unwatch."""

    def __init__(self):
        self.watched = []
        self.unwatched = []

    def watch_new(self, directory):
        self.watched.append(directory)

    def unwatch(self, directory):
        self.unwatched.append(directory)


class FakeObserver:
    """Minimal watchdog observer double: remembers schedules, never emits."""

    def __init__(self, fail_on=None):
        self.scheduled = []
        self.unscheduled = []
        self.started = False
        self.fail_on = fail_on

    def schedule(self, handler, path, recursive=False):
        if self.fail_on is not None and path == str(self.fail_on):
            raise FileNotFoundError(path)
        watch = ("watch", path, recursive)
        self.scheduled.append(watch)
        return watch

    def unschedule(self, watch):
        self.unscheduled.append(watch)

    def start(self):
        self.started = True

    def is_alive(self):
        return False

    def stop(self):
        pass

    def join(self, timeout=None):
        pass


@pytest.fixture
def logger():
    return logging.getLogger("mirror_tests")


@pytest.fixture
def roots(tmp_path):
    """Resolved (source, backup) roots; the source holds ``a.txt`` = "hello"."""
    base = tmp_path.resolve()
    source = base / "watched"
    backup = base / "_backup"
    source.mkdir()
    (source / "a.txt").write_text("hello")
    return source, backup


@pytest.fixture
def mirrored(roots, logger):
    """Roots after the initial mirror has been built."""
    source, backup = roots
    init_backup(source, backup, logger)
    return source, backup


@pytest.fixture
def change_log():
    return RecordingLog()


@pytest.fixture
def watches():
    return FakeWatches()


def write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    return path
