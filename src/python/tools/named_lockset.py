#!/usr/bin/env python3
"""Cross-process named lock set backed by a shared file.

Every cooperating process on the host opens the same registry file. Mutations
take an exclusive ``flock`` on a sibling ``.lock`` control file, read the whole
registry, compute the new entry list and rewrite it in full. Entries owned by
processes that no longer exist are dropped lazily by the next acquirer, so a
crashed holder never blocks a job forever.
"""

from __future__ import annotations

import fcntl
import json
import logging
import math
import os
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import IO, Iterator, List, Optional, Protocol

import psutil


LOGGER = logging.getLogger("named_lockset")

# Creation times further apart than this belong to different processes.
START_TIME_TOLERANCE_SEC = 1.0
MAX_PID = 2**31 - 1


def default_lock_path() -> Path:
    return Path(tempfile.gettempdir()) / "media-transcoder" / "locks.ndjson"


class LockHeldError(RuntimeError):
    """Raised by ``try_acquire`` when a live process already holds the name."""

    def __init__(self, name: str, owner: int):
        super().__init__(f"lock {name!r} already held by PID {owner}")
        self.name = name
        self.owner = owner


@dataclass(frozen=True)
class LockEntry:
    name: str
    pid: int
    started: Optional[float] = None


class LivenessProbe(Protocol):
    def is_alive(self, pid: int, started: Optional[float] = None) -> bool:
        ...


def process_start_time(pid: int) -> Optional[float]:
    try:
        return psutil.Process(pid).create_time()
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None


class PidLivenessProbe:
    """Report whether ``pid`` names a running process.

    When the lock entry recorded the owner's creation time, a running process
    with a different creation time is a recycled PID and counts as dead.
    """

    def is_alive(self, pid: int, started: Optional[float] = None) -> bool:
        if not 0 < pid <= MAX_PID:
            return False
        try:
            os.kill(pid, 0)
        except (ProcessLookupError, OverflowError):
            return False
        except PermissionError:
            # Exists but belongs to another user
            pass

        try:
            process = psutil.Process(pid)
            if process.status() == psutil.STATUS_ZOMBIE:
                return False
            current = process.create_time()
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            return True

        if started is not None and abs(current - started) > START_TIME_TOLERANCE_SEC:
            LOGGER.debug("PID %d was reused (started %.2f, recorded %.2f)", pid, current, started)
            return False
        return True


def _decode_entry(line: str) -> LockEntry:
    data = json.loads(line)
    if not isinstance(data, dict):
        raise ValueError("lock entry is not an object")
    name = data.get("name")
    pid = data.get("pid")
    if not isinstance(name, str) or not isinstance(pid, int) or isinstance(pid, bool):
        raise ValueError("lock entry needs a string name and an integer pid")
    if not 0 < pid <= MAX_PID:
        raise ValueError(f"lock entry pid {pid} is out of range")
    started = data.get("started")
    if started is not None:
        started = float(started)
        if not math.isfinite(started):
            raise ValueError("lock entry start time is not finite")
    return LockEntry(name=name, pid=pid, started=started)


class NamedLockSet:
    """File-backed set of named mutual-exclusion slots shared between processes."""

    def __init__(self, path: Path, probe: Optional[LivenessProbe] = None):
        self.path = path
        self.control_path = path.with_name(path.name + ".lock")
        self.probe: LivenessProbe = probe or PidLivenessProbe()
        self.lock = threading.Lock()
        self.pid = os.getpid()
        self.started = process_start_time(self.pid)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def _locked_registry(self) -> Iterator[IO[str]]:
        # Blocks until granted; there is no timeout.
        with self.lock:
            with self.control_path.open("a") as control:
                fcntl.flock(control.fileno(), fcntl.LOCK_EX)
                try:
                    with self.path.open("a+", encoding="utf-8", errors="surrogateescape") as registry:
                        yield registry
                finally:
                    fcntl.flock(control.fileno(), fcntl.LOCK_UN)

    def _read(self, registry: IO[str]) -> List[LockEntry]:
        registry.seek(0)
        entries: List[LockEntry] = []
        for line in registry:
            line = line.strip()
            if not line:
                continue
            try:
                entries.append(_decode_entry(line))
            except (ValueError, TypeError, OverflowError) as exc:
                LOGGER.warning("Dropping malformed lock entry in %s: %s", self.path, exc)
        return entries

    def _write(self, registry: IO[str], entries: List[LockEntry]) -> None:
        registry.seek(0)
        registry.truncate()
        for entry in entries:
            registry.write(json.dumps(asdict(entry)) + "\n")
        registry.flush()
        os.fsync(registry.fileno())

    def try_acquire(self, name: str) -> None:
        """
        Register ``name`` as held by this process.

        Entries whose owners are no longer alive are reclaimed during the scan.

        Raises:
            LockHeldError: a live process already holds ``name``.
            OSError: the registry or its control file cannot be used.
        """
        with self._locked_registry() as registry:
            keep: List[LockEntry] = []
            for entry in self._read(registry):
                if not self.probe.is_alive(entry.pid, entry.started):
                    LOGGER.info("Reclaiming stale lock %r from dead PID %d", entry.name, entry.pid)
                    continue
                if entry.name == name:
                    raise LockHeldError(name, entry.pid)
                keep.append(entry)

            keep.append(LockEntry(name=name, pid=self.pid, started=self.started))
            self._write(registry, keep)
        LOGGER.debug("Acquired lock %r", name)

    def release(self, name: str) -> None:
        with self._locked_registry() as registry:
            entries = self._read(registry)
            remaining = [entry for entry in entries if entry.name != name or entry.pid != self.pid]
            self._write(registry, remaining)
        if len(remaining) != len(entries):
            LOGGER.debug("Released lock %r", name)

    @contextmanager
    def held(self, name: str) -> Iterator[None]:
        self.try_acquire(name)
        try:
            yield
        finally:
            self.release(name)

    def entries(self) -> List[LockEntry]:
        with self._locked_registry() as registry:
            return self._read(registry)
