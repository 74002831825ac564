# /change_mirror.py
"""
Change Mirror
- Mirrors a monitored folder into a backup folder and keeps it in step with live changes.
- Startup wipes and rebuilds the backup as a byte-for-byte copy of the monitored tree.
- Watches every directory (watchdog), picking up new directories as they appear.
- Each change is classified as create / modify / remove / rename and applied to the backup.
- Modifications are diffed (diff-match-patch) against the backup before it is overwritten;
  the insert/delete spans are stored in Postgres (log_table, JSONB) together with creates and removes.
- Optional shell commands run on every accepted change.
- Per-path ordering: changes to the same path are applied strictly in arrival order,
  unrelated paths are applied concurrently on a bounded worker pool.
- Styled console output:
  - CREATE / MODIFY / COPY green
  - REMOVE / RENAME orange
  - failures red
  - file paths white
  - folder paths light brown
- Log file is always plain (no color codes).

Usage
  pip install watchdog pathspec colorama pyyaml diff-match-patch "psycopg[binary]"
  POSTGRES_HOST=... POSTGRES_PORT=5432 POSTGRES_USER=... POSTGRES_PASSWORD=... POSTGRES_DB=... \\
      python change_mirror.py --config config.yml
  python change_mirror.py --config config.yml --init-only

config.yml
  - path: ./watched
    commands:
      - echo changed
"""

from __future__ import annotations

import argparse
import datetime as dt
import errno
import logging
import os
import queue
import shlex
import shutil
import signal
import subprocess
import sys
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from enum import Enum, IntFlag
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Mapping, Optional, TypeVar

import psycopg
import yaml
from colorama import init as colorama_init
from diff_match_patch import diff_match_patch
from pathspec import PathSpec
from psycopg.types.json import Jsonb
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

LOGGER_NAME = "change_mirror"

DEFAULT_CONFIG_PATH = Path("config.yml")
DEFAULT_BACKUP_DIR = "_backup"
DEFAULT_WORKERS = 8
DEFAULT_HOOK_WORKERS = 2

# Editor temp markers stripped from the end of a file name before rebasing.
TEMP_MARKERS = "~"

RETRY_ATTEMPTS = 3
RETRY_DELAY_SEC = 0.2

T = TypeVar("T")


# -------------------------
# Console styling
# -------------------------

class Ansi:
    RESET = "\x1b[0m"
    RED = "\x1b[31m"
    GREEN = "\x1b[32m"
    ORANGE = "\x1b[38;5;208m"
    WHITE = "\x1b[97m"
    LIGHT_BROWN = "\x1b[33m"


ACTION_COLORS = {
    "CREATE": Ansi.GREEN,
    "MODIFY": Ansi.GREEN,
    "COPY": Ansi.GREEN,
    "REMOVE": Ansi.ORANGE,
    "RENAME": Ansi.ORANGE,
    "MKDIR": Ansi.LIGHT_BROWN,
    "WATCH": Ansi.LIGHT_BROWN,
    "HOOK": Ansi.WHITE,
    "FAIL": Ansi.RED,
}


def _supports_color(stream) -> bool:
    try:
        return hasattr(stream, "isatty") and stream.isatty()
    except Exception:
        return False


class ColorizingFormatter(logging.Formatter):
    def __init__(self, use_color: bool, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        if not self.use_color:
            return base

        action = getattr(record, "action", None)
        is_dir = getattr(record, "is_dir", None)
        path_text = getattr(record, "path_text", None)

        if record.levelno >= logging.ERROR:
            return f"{Ansi.RED}{base}{Ansi.RESET}"

        if action:
            action_color = ACTION_COLORS.get(action, "")
            if action_color and action in base:
                base = base.replace(action, f"{action_color}{action}{Ansi.RESET}", 1)

        if path_text and path_text in base:
            pcolor = Ansi.LIGHT_BROWN if is_dir else Ansi.WHITE
            base = base.replace(path_text, f"{pcolor}{path_text}{Ansi.RESET}")

        return base


def _today_log_name(prefix: str = LOGGER_NAME) -> str:
    return f"{prefix}_{dt.date.today().isoformat()}.log"


def setup_logger(log_dir: Optional[Path] = None, level: int = logging.INFO) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.propagate = False

    if logger.handlers:
        return logger

    use_color = _supports_color(sys.stdout)
    if use_color:
        colorama_init()

    fmt = "%(asctime)s | %(levelname)s | %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(level)
    ch.setFormatter(ColorizingFormatter(use_color=use_color, fmt=fmt, datefmt=datefmt))
    logger.addHandler(ch)

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        log_path = log_dir / _today_log_name()
        fh = logging.FileHandler(log_path, encoding="utf-8")
        fh.setFormatter(logging.Formatter(fmt=fmt, datefmt=datefmt))
        fh.setLevel(level)
        logger.addHandler(fh)
        logger.info("Logging to: %s", log_path)

    return logger


def log_action(
    logger: logging.Logger,
    action: str,
    message: str,
    path: Optional[Path] = None,
    is_dir: Optional[bool] = None,
    level: int = logging.INFO,
) -> None:
    extra: dict[str, Any] = {"action": action}
    if path is not None:
        extra["path_text"] = str(path)
        extra["is_dir"] = bool(is_dir) if is_dir is not None else (path.exists() and path.is_dir())
    logger.log(level, f"{action} | {message}", extra=extra)


# -------------------------
# Errors
# -------------------------

class ChangeMirrorError(Exception):
    """Base class for errors raised by the mirror."""


class ConfigError(ChangeMirrorError):
    """Raised when the configuration file or environment is missing or invalid."""


class BootstrapError(ChangeMirrorError):
    """Raised when startup (backup init, watch registration, database) cannot complete."""


class CommandError(ChangeMirrorError):
    """Raised when a configured hook command fails."""


class CommandCancelled(CommandError):
    """Raised when a hook command is interrupted by the cancel signal."""


# -------------------------
# Config / CLI
# -------------------------

@dataclass(frozen=True)
class Setting:
    path: Path
    backup: Path
    commands: tuple[str, ...] = ()
    workers: int = DEFAULT_WORKERS
    hook_workers: int = DEFAULT_HOOK_WORKERS
    command_timeout: Optional[float] = None
    log_renames: bool = False
    ignore: tuple[str, ...] = ()


def parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Mirror a folder into a backup folder and log every change.")
    p.add_argument("--config", type=str, default=str(DEFAULT_CONFIG_PATH), help="YAML settings file (default: %(default)s).")
    p.add_argument("--backup", type=str, default=None, help="Backup folder (overrides the config file).")
    p.add_argument("--log-dir", type=str, default=None, help="Directory for log files (console only when omitted).")
    p.add_argument("--workers", type=int, default=None, help="Size of the mirror sync worker pool.")
    p.add_argument("--init-only", action="store_true", help="Rebuild the backup and exit without watching.")
    return p.parse_args(argv)


def load_config(path: Path) -> Setting:
    """Load the settings list and return its first entry."""

    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}")

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Failed to read YAML configuration: {exc}") from exc

    if not isinstance(data, list) or not data:
        raise ConfigError("Configuration root must be a non-empty list of settings")

    return _parse_setting(data[0], config_path=path)


def _parse_setting(raw: Any, *, config_path: Path) -> Setting:
    if not isinstance(raw, dict):
        raise ConfigError("Each setting must be a mapping")

    base = config_path.parent

    path_raw = raw.get("path")
    if not isinstance(path_raw, str) or not path_raw:
        raise ConfigError("path must be a non-empty string")

    backup_raw = raw.get("backup", DEFAULT_BACKUP_DIR)
    if not isinstance(backup_raw, str) or not backup_raw:
        raise ConfigError("backup must be a non-empty string")

    timeout = raw.get("command_timeout")
    if timeout is not None:
        try:
            timeout = float(timeout)
        except (TypeError, ValueError) as exc:
            raise ConfigError("command_timeout must be numeric") from exc
        if timeout <= 0:
            raise ConfigError("command_timeout must be positive")

    log_renames = raw.get("log_renames", False)
    if not isinstance(log_renames, bool):
        raise ConfigError("log_renames must be a boolean")

    return Setting(
        path=_resolve_against(base, path_raw),
        backup=_resolve_against(base, backup_raw),
        commands=tuple(_ensure_str_list(raw.get("commands", []), "commands")),
        workers=_positive_int(raw.get("workers", DEFAULT_WORKERS), "workers"),
        hook_workers=_positive_int(raw.get("hook_workers", DEFAULT_HOOK_WORKERS), "hook_workers"),
        command_timeout=timeout,
        log_renames=log_renames,
        ignore=tuple(_ensure_str_list(raw.get("ignore", []), "ignore")),
    )


def _resolve_against(base: Path, raw: str) -> Path:
    path = Path(raw).expanduser()
    if not path.is_absolute():
        path = base / path
    return path


def _ensure_str_list(value: Any, field_name: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ConfigError(f"{field_name} must be a list of strings")
    return value


def _positive_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigError(f"{field_name} must be a positive integer")
    return value


def database_url(environ: Optional[Mapping[str, str]] = None) -> str:
    env = os.environ if environ is None else environ
    if env.get("DATABASE_URL"):
        return env["DATABASE_URL"]

    keys = ("POSTGRES_USER", "POSTGRES_PASSWORD", "POSTGRES_HOST", "POSTGRES_PORT", "POSTGRES_DB")
    missing = [key for key in keys if not env.get(key)]
    if missing:
        raise ConfigError(f"Missing database environment variables: {', '.join(missing)}")

    user, password, host, port, name = (env[key] for key in keys)
    return f"postgres://{user}:{password}@{host}:{port}/{name}?sslmode=disable"


def _is_subpath(child: Path, parent: Path) -> bool:
    try:
        child.resolve().relative_to(parent.resolve())
        return True
    except ValueError:
        return False


def validate_paths(monitor: Path, backup: Path) -> tuple[Path, Path]:
    monitor = monitor.expanduser().resolve()
    backup = backup.expanduser().resolve()

    if not monitor.exists() or not monitor.is_dir():
        raise ConfigError(f"Monitor folder does not exist or is not a folder: {monitor}")
    if monitor == backup:
        raise ConfigError("Monitor and backup folders must be different.")
    if _is_subpath(backup, monitor):
        raise ConfigError("Backup folder must NOT be inside monitor folder (would cause loops).")
    if _is_subpath(monitor, backup):
        raise ConfigError("Monitor folder must NOT be inside backup folder (init would delete it).")

    return monitor, backup


# -------------------------
# Ignore + filesystem helpers
# -------------------------

class IgnoreMatcher:
    def __init__(self, monitor_root: Path, patterns: Iterable[str]):
        self.monitor_root = monitor_root
        self.spec = PathSpec.from_lines("gitwildmatch", list(patterns))

    def is_ignored(self, path: Path, is_dir: Optional[bool] = None) -> bool:
        try:
            rel = path.relative_to(self.monitor_root)
        except ValueError:
            return True
        rel_posix = rel.as_posix()
        if is_dir is None:
            is_dir = path.is_dir()
        if is_dir and not rel_posix.endswith("/"):
            rel_posix += "/"
        return self.spec.match_file(rel_posix)


def normalize_target(path: str) -> Path:
    head, tail = os.path.split(path)
    stripped = tail.rstrip(TEMP_MARKERS)
    return Path(os.path.join(head, stripped)) if stripped else Path(path)


def rebase(path: Path, source_root: Path, backup_root: Path) -> Path:
    """Swap the source root prefix of ``path`` for the backup root."""
    text, prefix = str(path), str(source_root)
    if not text.startswith(prefix.rstrip(os.sep) + os.sep):
        raise ValueError(f"{path} is not inside {source_root}")
    return Path(str(backup_root) + text[len(prefix.rstrip(os.sep)):])


def ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _is_transient_error(exc: BaseException) -> bool:
    winerror = getattr(exc, "winerror", None)
    if winerror == 32:  # ERROR_SHARING_VIOLATION
        return True
    err = getattr(exc, "errno", None)
    return isinstance(exc, OSError) and err in {errno.EACCES, errno.EPERM, errno.EBUSY, errno.EAGAIN}


def io_retry(
    max_attempts: int = RETRY_ATTEMPTS,
    delay_secs: float = RETRY_DELAY_SEC,
    backoff_multiplier: float = 2.0,
    retry_on: Callable[[BaseException], bool] = _is_transient_error,
):
    """
    Retry the wrapped call while ``retry_on`` says the failure is transient.

    The last failure is re-raised once ``max_attempts`` is exhausted; anything
    ``retry_on`` rejects propagates immediately.
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            current_delay = delay_secs
            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except Exception as exc:
                    if attempt >= max_attempts or not retry_on(exc):
                        raise
                    logging.getLogger(LOGGER_NAME).warning(
                        "%s failed (attempt %d/%d): %s. Retrying in %.1fs...",
                        func.__name__, attempt, max_attempts, exc, current_delay,
                    )
                    time.sleep(current_delay)
                    current_delay *= backoff_multiplier
            raise RuntimeError(f"Unexpected exit from retry loop: {func.__name__}")

        return wrapper
    return decorator


@io_retry()
def copy_content(src: Path, dst: Path) -> None:
    ensure_parent(dst)
    shutil.copy2(src, dst)


@io_retry()
def make_placeholder(dst: Path) -> None:
    ensure_parent(dst)
    dst.touch(exist_ok=True)


@io_retry()
def make_dir(dst: Path) -> None:
    dst.mkdir(parents=True, exist_ok=True)


@io_retry()
def remove_path(dst: Path) -> None:
    if dst.is_dir() and not dst.is_symlink():
        shutil.rmtree(dst)
    else:
        dst.unlink(missing_ok=True)


def read_text(path: Path, missing_ok: bool = False) -> str:
    try:
        data = path.read_bytes()
    except FileNotFoundError:
        if missing_ok:
            return ""
        raise
    return data.decode("utf-8", errors="replace")


# -------------------------
# Tree scan / backup init
# -------------------------

def scan_tree(root: Path, ignore: Optional[IgnoreMatcher] = None) -> Iterator[tuple[Path, bool]]:
    """
    Walk ``root`` depth-first, yielding ``(path, is_dir)`` with every directory
    before its children.

    Symlinks are followed, so an alias of a directory is walked as a copy of
    it. A directory that is one of its own ancestors (same device and inode
    on the path from ``root``) is not yielded, so symlink loops end. Any
    unreadable directory raises ``OSError``.
    """
    root_stat = root.stat()
    stack = [(root, frozenset({(root_stat.st_dev, root_stat.st_ino)}))]
    while stack:
        directory, ancestors = stack.pop()
        with os.scandir(directory) as it:
            entries = sorted(it, key=lambda e: e.name)

        subdirs: list[tuple[Path, frozenset]] = []
        for entry in entries:
            path = Path(entry.path)
            is_dir = entry.is_dir()
            if ignore is not None and ignore.is_ignored(path, is_dir=is_dir):
                continue
            if is_dir:
                st = entry.stat()
                key = (st.st_dev, st.st_ino)
                if key in ancestors:
                    continue
                subdirs.append((path, ancestors | {key}))
            yield path, is_dir

        stack.extend(reversed(subdirs))


def init_backup(
    source_root: Path,
    backup_root: Path,
    logger: logging.Logger,
    ignore: Optional[IgnoreMatcher] = None,
) -> int:
    """Replace ``backup_root`` with a fresh copy of ``source_root``; returns the number of files copied."""
    logger.info("INIT BACKUP: start (%s -> %s)", source_root, backup_root)
    copied = 0
    try:
        if backup_root.is_dir() and not backup_root.is_symlink():
            shutil.rmtree(backup_root)
        elif os.path.lexists(backup_root):
            backup_root.unlink()
        backup_root.mkdir(parents=True)

        for src, is_dir in scan_tree(source_root, ignore):
            dst = rebase(src, source_root, backup_root)
            if is_dir:
                dst.mkdir(parents=True, exist_ok=True)
                log_action(logger, "MKDIR", f"(init) {dst}", path=dst, is_dir=True, level=logging.DEBUG)
                continue
            ensure_parent(dst)
            shutil.copy2(src, dst)
            copied += 1
            log_action(logger, "COPY", f"(init) {src} -> {dst}", path=dst, is_dir=False, level=logging.DEBUG)
    except OSError as e:
        raise BootstrapError(f"Could not initialize backup {backup_root}: {e}") from e

    logger.info("INIT BACKUP: done (%d files)", copied)
    return copied


# -------------------------
# Diff
# -------------------------

class EditKind(str, Enum):
    INSERT = "insert"
    DELETE = "delete"
    EQUAL = "equal"


_DMP_KINDS = {
    diff_match_patch.DIFF_INSERT: EditKind.INSERT,
    diff_match_patch.DIFF_DELETE: EditKind.DELETE,
    diff_match_patch.DIFF_EQUAL: EditKind.EQUAL,
}


@dataclass(frozen=True)
class Edit:
    """One span of a diff; ``offset`` is its position in the old text."""

    kind: EditKind
    text: str
    offset: int


def diff_spans(old: str, new: str) -> list[Edit]:
    spans: list[Edit] = []
    offset = 0
    for op, text in diff_match_patch().diff_main(old, new, False):
        kind = _DMP_KINDS[op]
        spans.append(Edit(kind, text, offset))
        if kind is not EditKind.INSERT:
            offset += len(text)
    return spans


def filter_edits(spans: Iterable[Edit]) -> list[Edit]:
    return [span for span in spans if span.kind is not EditKind.EQUAL]


def compute_diff(old: str, new: str) -> list[Edit]:
    """Insert/delete spans turning ``old`` into ``new``, in order."""
    return filter_edits(diff_spans(old, new))


def apply_edits(old: str, edits: Iterable[Edit]) -> str:
    out: list[str] = []
    cursor = 0
    for edit in edits:
        if edit.kind is EditKind.EQUAL:
            continue
        out.append(old[cursor:edit.offset])
        cursor = edit.offset
        if edit.kind is EditKind.INSERT:
            out.append(edit.text)
        else:
            cursor += len(edit.text)
    out.append(old[cursor:])
    return "".join(out)


def edits_to_document(edits: Iterable[Edit]) -> list[dict[str, Any]]:
    return [{"type": e.kind.value, "text": e.text, "offset": e.offset} for e in edits]


# -------------------------
# Events / classification
# -------------------------

class Op(IntFlag):
    """Raw notification bits."""

    WRITE = 1
    CREATE = 2
    REMOVE = 4
    RENAME = 8
    CHMOD = 16


class Operation(str, Enum):
    CREATE = "create"
    MODIFY = "modify"
    REMOVE = "remove"
    RENAME_AWAY = "rename"


class DropReason(str, Enum):
    DUPLICATE_CREATE = "duplicate_create"
    STALE_REMOVE = "stale_remove"
    ATTRIBUTE_ONLY = "attribute_only"
    OUTSIDE_SOURCE = "outside_source"
    IGNORED = "ignored"


@dataclass(frozen=True)
class Notification:
    path: str
    op: Op


@dataclass(frozen=True)
class ChangeEvent:
    target: Path
    backup: Path
    operation: Operation


@dataclass
class SyncStats:
    """Counters for accepted, applied and dropped changes."""

    events_accepted: int = 0
    events_applied: int = 0
    events_skipped: int = 0
    events_failed: int = 0
    hooks_run: int = 0
    hooks_failed: int = 0
    drops: dict[str, int] = field(default_factory=dict)
    _guard: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def incr(self, counter: str) -> None:
        with self._guard:
            setattr(self, counter, getattr(self, counter) + 1)

    def record_drop(self, reason: DropReason) -> None:
        with self._guard:
            self.drops[reason.value] = self.drops.get(reason.value, 0) + 1

    def summary(self) -> str:
        with self._guard:
            dropped = ", ".join(f"{k}={v}" for k, v in sorted(self.drops.items())) or "none"
            return (
                f"accepted={self.events_accepted} applied={self.events_applied} "
                f"skipped={self.events_skipped} failed={self.events_failed} "
                f"hooks={self.hooks_run} hook_failures={self.hooks_failed} dropped: {dropped}"
            )


def classify(
    notification: Notification,
    source_root: Path,
    backup_root: Path,
    ignore: Optional[IgnoreMatcher] = None,
) -> tuple[list[ChangeEvent], list[DropReason]]:
    """
    Turn one raw notification into change events.

    Each bit is checked on its own, so a notification carrying several bits
    yields several events (create, modify, remove, rename-away, in that order).
    A create whose backup already exists and a remove whose source still exists
    are dropped and reported in the second list.
    """
    events: list[ChangeEvent] = []
    drops: list[DropReason] = []

    op = notification.op
    if op == Op.CHMOD:
        return events, [DropReason.ATTRIBUTE_ONLY]

    target = normalize_target(notification.path)
    try:
        backup = rebase(target, source_root, backup_root)
    except ValueError:
        return events, [DropReason.OUTSIDE_SOURCE]

    if ignore is not None and ignore.is_ignored(target):
        return events, [DropReason.IGNORED]

    if op & Op.CREATE:
        if os.path.lexists(backup):
            drops.append(DropReason.DUPLICATE_CREATE)
        else:
            events.append(ChangeEvent(target, backup, Operation.CREATE))
    if op & Op.WRITE:
        events.append(ChangeEvent(target, backup, Operation.MODIFY))
    if op & Op.REMOVE:
        if os.path.lexists(target):
            drops.append(DropReason.STALE_REMOVE)
        else:
            events.append(ChangeEvent(target, backup, Operation.REMOVE))
    if op & Op.RENAME:
        events.append(ChangeEvent(target, backup, Operation.RENAME_AWAY))
    return events, drops


# -------------------------
# Change log (Postgres)
# -------------------------

CREATE_LOG_TABLE = """
    CREATE TABLE IF NOT EXISTS log_table (
        id SERIAL PRIMARY KEY,
        path TEXT,
        op TEXT,
        data JSONB
    )
"""

INSERT_LOG_ENTRY = "INSERT INTO log_table (path, op, data) VALUES (%s, %s, %s)"


def _is_transient_db_error(exc: BaseException) -> bool:
    return isinstance(exc, psycopg.OperationalError)


class PostgresChangeLog:
    """
    Appends (path, op, diff) rows to ``log_table``; safe to share between threads.

    When built with a ``reconnect`` factory, a closed or broken connection is
    replaced before the next statement, so a server restart costs one retry
    instead of every later insert.
    """

    def __init__(self, conn: psycopg.Connection, reconnect: Optional[Callable[[], psycopg.Connection]] = None):
        self._conn = conn
        self._reconnect = reconnect
        self._guard = threading.Lock()

    @classmethod
    def connect(cls, dsn: str) -> "PostgresChangeLog":
        def reconnect() -> psycopg.Connection:
            return psycopg.connect(dsn, autocommit=True)

        log = cls(reconnect(), reconnect=reconnect)
        log.ensure_table()
        return log

    def _connection(self) -> psycopg.Connection:
        with self._guard:
            if self._reconnect is not None and (self._conn.closed or getattr(self._conn, "broken", False)):
                logging.getLogger(LOGGER_NAME).warning("Change log connection lost; reconnecting")
                self._conn = self._reconnect()
            return self._conn

    def ensure_table(self) -> None:
        self._connection().execute(CREATE_LOG_TABLE)

    @io_retry(retry_on=_is_transient_db_error)
    def insert(self, path: str, operation: str, edits: Optional[list[Edit]] = None) -> None:
        data = None if edits is None else Jsonb(edits_to_document(edits))
        self._connection().execute(INSERT_LOG_ENTRY, (path, operation, data))

    def close(self) -> None:
        with self._guard:
            self._conn.close()


# -------------------------
# Command hook
# -------------------------

class CommandRunner:
    """Runs the configured commands in order and returns their combined stdout."""

    def __init__(self, commands: Iterable[str], timeout: Optional[float] = None, poll_interval: float = 0.1):
        self.commands = list(commands)
        self.timeout = timeout
        self.poll_interval = poll_interval

    def run(self, cancel: Optional[threading.Event] = None) -> str:
        outputs = []
        for command in self.commands:
            if cancel is not None and cancel.is_set():
                raise CommandCancelled(f"{command!r} not started: cancelled")
            outputs.append(self._run_one(command, cancel))
        return "".join(outputs)

    def _run_one(self, command: str, cancel: Optional[threading.Event]) -> str:
        argv = shlex.split(command)
        if not argv:
            return ""
        try:
            proc = subprocess.Popen(argv, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
        except OSError as e:
            raise CommandError(f"{command!r}: {e}") from e

        deadline = None if self.timeout is None else time.monotonic() + self.timeout
        while True:
            try:
                out, err = proc.communicate(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.is_set():
                    proc.kill()
                    proc.communicate()
                    raise CommandCancelled(f"{command!r} cancelled")
                if deadline is not None and time.monotonic() >= deadline:
                    proc.kill()
                    proc.communicate()
                    raise CommandError(f"{command!r} timed out after {self.timeout}s")

        if proc.returncode != 0:
            raise CommandError(f"{command!r} exited with {proc.returncode}: {err.strip()}")
        return out


# -------------------------
# Watchdog event source
# -------------------------

class NotificationHandler(FileSystemEventHandler):
    """Translates watchdog events into raw notifications."""

    def __init__(self, publish: Callable[[Notification], None]):
        self.publish = publish

    def on_created(self, event):
        self.publish(Notification(os.fsdecode(event.src_path), Op.CREATE))

    def on_modified(self, event):
        # directory mtime/attribute updates are not content changes
        op = Op.CHMOD if event.is_directory else Op.WRITE
        self.publish(Notification(os.fsdecode(event.src_path), op))

    def on_deleted(self, event):
        self.publish(Notification(os.fsdecode(event.src_path), Op.REMOVE))

    def on_moved(self, event):
        self.publish(Notification(os.fsdecode(event.src_path), Op.RENAME))
        dest_op = Op.CREATE if event.is_directory else Op.CREATE | Op.WRITE
        self.publish(Notification(os.fsdecode(event.dest_path), dest_op))


class WatchRegistry:
    """Lock-guarded set of watched directories, one non-recursive watch each."""

    def __init__(self, observer, handler: FileSystemEventHandler):
        self._observer = observer
        self._handler = handler
        self._watches: dict[Path, Any] = {}
        self._guard = threading.Lock()

    def __contains__(self, directory: Path) -> bool:
        with self._guard:
            return directory in self._watches

    def __len__(self) -> int:
        with self._guard:
            return len(self._watches)

    def add(self, directory: Path) -> bool:
        with self._guard:
            if directory in self._watches:
                return False
            self._watches[directory] = self._observer.schedule(self._handler, str(directory), recursive=False)
            return True

    def discard(self, directory: Path) -> int:
        """Drop ``directory`` and everything below it; returns how many watches went away."""
        with self._guard:
            doomed = [p for p in self._watches if p == directory or directory in p.parents]
            for p in doomed:
                watch = self._watches.pop(p)
                try:
                    self._observer.unschedule(watch)
                except (KeyError, OSError) as e:
                    logging.getLogger(LOGGER_NAME).debug("unschedule %s: %s", p, e)
        return len(doomed)


class EventSource:
    def __init__(self, source_root: Path, logger: logging.Logger, observer=None):
        self.source_root = source_root
        self.logger = logger
        self._queue: queue.Queue[Optional[Notification]] = queue.Queue()
        self._observer = observer if observer is not None else Observer()
        self.handler = NotificationHandler(self.publish)
        self.registry = WatchRegistry(self._observer, self.handler)

    def publish(self, notification: Notification) -> None:
        self._queue.put(notification)

    def start(self, directories: Iterable[Path]) -> None:
        try:
            for directory in directories:
                self.registry.add(directory)
            self._observer.start()
        except OSError as e:
            raise BootstrapError(f"Could not watch {self.source_root}: {e}") from e
        self.logger.info("Watching %d directories under %s", len(self.registry), self.source_root)

    def watch_new(self, directory: Path) -> None:
        if not self.registry.add(directory):
            return
        log_action(self.logger, "WATCH", f"{directory}", path=directory, is_dir=True, level=logging.DEBUG)
        self.backfill(directory)

    def backfill(self, directory: Path) -> None:
        """Publish notifications for entries that appeared before the watch was active."""
        with os.scandir(directory) as it:
            for entry in it:
                op = Op.CREATE if entry.is_dir() else Op.CREATE | Op.WRITE
                self.publish(Notification(entry.path, op))

    def unwatch(self, directory: Path) -> None:
        self.registry.discard(directory)

    def notifications(self) -> Iterator[Notification]:
        while True:
            notification = self._queue.get()
            if notification is None:
                return
            yield notification

    def close(self) -> None:
        if self._observer.is_alive():
            self._observer.stop()
            self._observer.join(timeout=10)
        self._queue.put(None)


# -------------------------
# Mirror sync
# -------------------------

class SyncStatus(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class SyncResult:
    event: ChangeEvent
    status: SyncStatus
    error: Optional[Exception] = None


class MirrorSync:
    """Applies change events to the backup tree and records them in the change log."""

    def __init__(
        self,
        change_log,
        watches,
        logger: logging.Logger,
        stats: Optional[SyncStats] = None,
        log_renames: bool = False,
    ):
        self.change_log = change_log
        self.watches = watches
        self.logger = logger
        self.stats = stats if stats is not None else SyncStats()
        self.log_renames = log_renames
        self._handlers: dict[Operation, Callable[[ChangeEvent], SyncStatus]] = {
            Operation.CREATE: self._create,
            Operation.MODIFY: self._modify,
            Operation.REMOVE: self._remove,
            Operation.RENAME_AWAY: self._rename_away,
        }

    def apply(self, event: ChangeEvent) -> SyncResult:
        try:
            status = self._handlers[event.operation](event)
        except Exception as e:
            self.stats.incr("events_failed")
            log_action(
                self.logger,
                "FAIL",
                f"{event.operation.value} {event.target} | {e}",
                path=event.backup,
                is_dir=False,
                level=logging.ERROR,
            )
            return SyncResult(event, SyncStatus.FAILED, e)

        self.stats.incr("events_applied" if status is SyncStatus.APPLIED else "events_skipped")
        return SyncResult(event, status)

    def _skip(self, event: ChangeEvent, reason: str) -> SyncStatus:
        log_action(self.logger, "SKIP", f"{event.operation.value} ({reason}) {event.target}", level=logging.DEBUG)
        return SyncStatus.SKIPPED

    def _create(self, event: ChangeEvent) -> SyncStatus:
        # an earlier create for this path may have been applied since classification
        if os.path.lexists(event.backup):
            self.stats.record_drop(DropReason.DUPLICATE_CREATE)
            return self._skip(event, DropReason.DUPLICATE_CREATE.value)
        if not event.target.exists():
            return self._skip(event, "source vanished")

        if event.target.is_dir():
            make_dir(event.backup)
            log_action(self.logger, "MKDIR", f"{event.backup}", path=event.backup, is_dir=True)
            self.watches.watch_new(event.target)
        else:
            # content follows with the next write
            make_placeholder(event.backup)
            log_action(self.logger, "CREATE", f"{event.backup}", path=event.backup, is_dir=False)

        self.change_log.insert(str(event.target), Operation.CREATE.value, None)
        return SyncStatus.APPLIED

    def _modify(self, event: ChangeEvent) -> SyncStatus:
        if not event.target.exists():
            return self._skip(event, "source vanished")
        if event.target.is_dir():
            return self._skip(event, "directory")

        before = read_text(event.backup, missing_ok=True)
        after = read_text(event.target)
        edits = compute_diff(before, after)

        # log before copying: the backup holds the only "before" state
        self.change_log.insert(str(event.target), Operation.MODIFY.value, edits)
        copy_content(event.target, event.backup)
        log_action(self.logger, "MODIFY", f"{event.target} -> {event.backup} ({len(edits)} edits)", path=event.backup, is_dir=False)
        return SyncStatus.APPLIED

    def _remove(self, event: ChangeEvent) -> SyncStatus:
        if not os.path.lexists(event.backup):
            return self._skip(event, "backup already gone")

        remove_path(event.backup)
        self.watches.unwatch(event.target)
        log_action(self.logger, "REMOVE", f"{event.backup}", path=event.backup, is_dir=False)
        self.change_log.insert(str(event.target), Operation.REMOVE.value, None)
        return SyncStatus.APPLIED

    def _rename_away(self, event: ChangeEvent) -> SyncStatus:
        remove_path(event.backup)
        self.watches.unwatch(event.target)
        log_action(self.logger, "RENAME", f"away {event.backup}", path=event.backup, is_dir=False)
        if self.log_renames:
            self.change_log.insert(str(event.target), Operation.REMOVE.value, None)
        return SyncStatus.APPLIED


# -------------------------
# Dispatch
# -------------------------

class KeyedSerialExecutor:
    """
    Bounded thread pool where jobs sharing a key run one at a time, in the
    order they were submitted. Jobs with different keys run concurrently.
    """

    def __init__(self, max_workers: int, thread_name_prefix: str = ""):
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=thread_name_prefix)
        self._pending: dict[str, deque] = {}
        self._guard = threading.Lock()
        self._closed = False

    def submit(self, key: str, fn: Callable[..., Any], *args: Any) -> bool:
        with self._guard:
            if self._closed:
                return False
            jobs = self._pending.get(key)
            if jobs is not None:
                jobs.append((fn, args))
                return True
            self._pending[key] = deque([(fn, args)])
            self._pool.submit(self._drain, key)
            return True

    def _drain(self, key: str) -> None:
        while True:
            with self._guard:
                jobs = self._pending.get(key)
                if not jobs:
                    self._pending.pop(key, None)
                    return
                fn, args = jobs.popleft()
            try:
                fn(*args)
            except Exception:
                logging.getLogger(LOGGER_NAME).exception("Job for %s failed", key)

    def shutdown(self, wait: bool = True, cancel_pending: bool = False) -> None:
        with self._guard:
            self._closed = True
            if cancel_pending:
                for jobs in self._pending.values():
                    jobs.clear()
        self._pool.shutdown(wait=wait, cancel_futures=cancel_pending)


class ChangeDispatcher:
    """Classifies notifications and hands each accepted event to the sync pool and the command hook."""

    def __init__(
        self,
        source_root: Path,
        backup_root: Path,
        sync: MirrorSync,
        logger: logging.Logger,
        hook: Optional[CommandRunner] = None,
        ignore: Optional[IgnoreMatcher] = None,
        workers: int = DEFAULT_WORKERS,
        hook_workers: int = DEFAULT_HOOK_WORKERS,
        cancel: Optional[threading.Event] = None,
    ):
        self.source_root = source_root
        self.backup_root = backup_root
        self.sync = sync
        self.logger = logger
        self.hook = hook if hook is not None and hook.commands else None
        self.ignore = ignore
        self.cancel = cancel if cancel is not None else threading.Event()
        self.stats = sync.stats
        self._executor = KeyedSerialExecutor(workers, thread_name_prefix="mirror-sync")
        self._hook_pool = (
            ThreadPoolExecutor(max_workers=hook_workers, thread_name_prefix="mirror-hook")
            if self.hook is not None
            else None
        )

    def dispatch(self, notification: Notification) -> list[ChangeEvent]:
        events, drops = classify(notification, self.source_root, self.backup_root, self.ignore)
        for reason in drops:
            self.stats.record_drop(reason)
            log_action(self.logger, "SKIP", f"({reason.value}) {notification.path}", level=logging.DEBUG)

        for event in events:
            self.stats.incr("events_accepted")
            self._executor.submit(str(event.target), self.sync.apply, event)
            if self._hook_pool is not None:
                self._hook_pool.submit(self._run_hook, event)
        return events

    def run(self, notifications: Iterable[Notification]) -> None:
        for notification in notifications:
            self.dispatch(notification)
        self.logger.info("Notification stream closed")

    def _run_hook(self, event: ChangeEvent) -> None:
        try:
            output = self.hook.run(self.cancel)
        except CommandCancelled as e:
            self.logger.debug("Hook cancelled: %s", e)
            return
        except CommandError as e:
            self.stats.incr("hooks_failed")
            log_action(self.logger, "FAIL", f"hook after {event.operation.value} {event.target} | {e}", level=logging.ERROR)
            return

        self.stats.incr("hooks_run")
        if output.strip():
            log_action(self.logger, "HOOK", output.rstrip())

    def shutdown(self, wait: bool = True, cancel_pending: bool = False) -> None:
        self._executor.shutdown(wait=wait, cancel_pending=cancel_pending)
        if self._hook_pool is not None:
            self._hook_pool.shutdown(wait=wait, cancel_futures=cancel_pending)


# -------------------------
# Main
# -------------------------

def _raise_interrupt(signum, frame) -> None:
    raise KeyboardInterrupt


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv if argv is not None else sys.argv[1:])
    logger = setup_logger(Path(args.log_dir).expanduser() if args.log_dir else None)

    try:
        setting = load_config(Path(args.config))
        if args.backup:
            setting = replace(setting, backup=Path(args.backup).expanduser())
        if args.workers is not None:
            setting = replace(setting, workers=_positive_int(args.workers, "--workers"))
        source, backup = validate_paths(setting.path, setting.backup)
        logger.info("Monitor: %s", source)
        logger.info("Backup : %s", backup)
    except ConfigError as e:
        logger.error("Config error: %s", e)
        return 2

    ignore = IgnoreMatcher(source, setting.ignore)

    if args.init_only:
        try:
            init_backup(source, backup, logger, ignore)
        except BootstrapError as e:
            logger.error("%s", e)
            return 2
        return 0

    try:
        change_log = PostgresChangeLog.connect(database_url())
    except ConfigError as e:
        logger.error("Config error: %s", e)
        return 2
    except psycopg.Error as e:
        logger.error("Could not open change log: %s", e)
        return 2

    events = EventSource(source, logger)
    cancel = threading.Event()
    stats = SyncStats()
    sync = MirrorSync(change_log, events, logger, stats=stats, log_renames=setting.log_renames)
    dispatcher = ChangeDispatcher(
        source,
        backup,
        sync,
        logger,
        hook=CommandRunner(setting.commands, timeout=setting.command_timeout),
        ignore=ignore,
        workers=setting.workers,
        hook_workers=setting.hook_workers,
        cancel=cancel,
    )

    try:
        init_backup(source, backup, logger, ignore)
        directories = [source] + [p for p, is_dir in scan_tree(source, ignore) if is_dir]
        events.start(directories)
    except (BootstrapError, OSError) as e:
        logger.error("Startup failed: %s", e)
        events.close()
        dispatcher.shutdown(wait=False, cancel_pending=True)
        change_log.close()
        return 2

    signal.signal(signal.SIGTERM, _raise_interrupt)
    dispatch_thread = threading.Thread(
        target=dispatcher.run, args=(events.notifications(),), name="mirror-dispatch", daemon=True
    )

    logger.info("Starting watcher... (Ctrl+C to stop)")
    dispatch_thread.start()

    exit_code = 0
    try:
        while dispatch_thread.is_alive():
            dispatch_thread.join(timeout=0.5)
        logger.error("Notification stream ended unexpectedly")
        exit_code = 1
    except KeyboardInterrupt:
        logger.info("Stopping...")
    finally:
        cancel.set()
        events.close()
        dispatch_thread.join(timeout=10)
        dispatcher.shutdown(wait=True, cancel_pending=True)
        change_log.close()
        logger.info("Stopped. %s", stats.summary())
        print("finished")
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
