#!/usr/bin/env python3
"""Append-only NDJSON journal of transcode outcomes.

Each line is one self-contained record describing a finished attempt: a
success (with its elapsed duration), a failure (with the error text) or an
intentional skip (with the reason). Writers serialise on an exclusive ``flock``
of ``<journal>.lock``; readers take the shared lock. Lines that do not decode
are skipped so a torn or hand-edited record never hides the rest of the
history.
"""

from __future__ import annotations

import enum
import fcntl
import json
import logging
import os
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple


LOGGER = logging.getLogger("encode_journal")

UNFINISHED_DURATION = "0s"
JOURNAL_ENV_VAR = "MEDIA_TRANSCODER_JOURNAL"


def default_journal_path() -> Path:
    override = os.environ.get(JOURNAL_ENV_VAR)
    if override:
        return Path(override).expanduser()
    data_home = os.environ.get("XDG_DATA_HOME") or str(Path.home() / ".local" / "share")
    return Path(data_home) / "media-transcoder" / "transcode.ndjson"


def human_time() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def format_duration(seconds: float) -> str:
    """
    Render an elapsed time as a compact human-readable string.

    Examples: ``0s``, ``250µs``, ``12.5ms``, ``42.5s``, ``3m7s``, ``1h2m3.25s``.
    Only a non-positive elapsed time renders as ``0s``.
    """
    if seconds <= 0:
        return UNFINISHED_DURATION
    if seconds < 1:
        millis = seconds * 1000
        if millis >= 1:
            return f"{millis:.2f}".rstrip("0").rstrip(".") + "ms"
        return f"{max(round(seconds * 1_000_000), 1)}µs"
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    secs_text = f"{secs:.2f}".rstrip("0").rstrip(".") or "0"
    parts = []
    if hours:
        parts.append(f"{int(hours)}h")
    if hours or minutes:
        parts.append(f"{int(minutes)}m")
    parts.append(f"{secs_text}s")
    return "".join(parts)


class JournalParseError(ValueError):
    pass


class Outcome(enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class JournalEntry:
    input_path: str
    output_path: str
    start_time: str
    duration: str = UNFINISHED_DURATION
    args: List[str] = field(default_factory=list)
    error: Optional[str] = None
    skipped: Optional[str] = None

    def __post_init__(self) -> None:
        if self.error and self.skipped:
            raise ValueError("a journal entry is either failed or skipped, not both")

    @classmethod
    def success(cls, input_path: str, output_path: str, start_time: str, duration: str, args: List[str]) -> "JournalEntry":
        return cls(input_path, output_path, start_time, duration, list(args))

    @classmethod
    def failure(
        cls,
        input_path: str,
        output_path: str,
        start_time: str,
        duration: str,
        args: List[str],
        error: str,
    ) -> "JournalEntry":
        return cls(input_path, output_path, start_time, duration, list(args), error=error or "unknown error")

    @classmethod
    def skip(cls, input_path: str, output_path: str, reason: str) -> "JournalEntry":
        return cls(input_path, output_path, human_time(), UNFINISHED_DURATION, [], skipped=reason or "skipped")

    @property
    def outcome(self) -> Outcome:
        if self.error:
            return Outcome.FAILURE
        if self.skipped:
            return Outcome.SKIPPED
        return Outcome.SUCCESS

    @property
    def key(self) -> Tuple[str, str]:
        return (self.input_path, self.output_path)

    def to_record(self) -> Dict:
        record: Dict = {
            "input": self.input_path,
            "output": self.output_path,
            "start_time": self.start_time,
            "duration": self.duration,
            "args": list(self.args),
        }
        if self.error:
            record["error"] = self.error
        if self.skipped:
            record["skipped"] = self.skipped
        return record

    @classmethod
    def from_record(cls, record: Dict) -> "JournalEntry":
        if not isinstance(record, dict):
            raise JournalParseError("journal record is not a JSON object")
        input_path = record.get("input")
        output_path = record.get("output")
        if not isinstance(input_path, str) or not isinstance(output_path, str) or not input_path or not output_path:
            raise JournalParseError("journal record is missing input or output")
        args = record.get("args") or []
        if not isinstance(args, list):
            raise JournalParseError("journal record args must be a list")
        error = record.get("error") or None
        skipped = record.get("skipped") or None
        for label, value in (("error", error), ("skipped", skipped)):
            if value is not None and not isinstance(value, str):
                raise JournalParseError(f"journal record {label} must be a string")
        duration = str(record.get("duration") or UNFINISHED_DURATION)
        # A success must carry a real elapsed time
        if error is None and skipped is None and duration == UNFINISHED_DURATION:
            raise JournalParseError("journal record has no outcome")
        try:
            return cls(
                input_path=input_path,
                output_path=output_path,
                start_time=str(record.get("start_time") or ""),
                duration=duration,
                args=[str(arg) for arg in args],
                error=error,
                skipped=skipped,
            )
        except ValueError as exc:
            raise JournalParseError(str(exc)) from exc


def parse_journal_line(line: str) -> JournalEntry:
    try:
        record = json.loads(line)
    except json.JSONDecodeError as exc:
        raise JournalParseError(f"invalid JSON: {exc}") from exc
    return JournalEntry.from_record(record)


@dataclass
class JournalScan:
    entries: List[JournalEntry]
    unparseable: int = 0


class EncodeJournal:
    """Append-only journal shared by every transcoder process."""

    def __init__(self, path: Path):
        self.path = path
        self.control_path = path.with_name(path.name + ".lock")

    def ensure_ready(self) -> None:
        """Create the journal directory. Failure here is a setup error."""
        self.path.parent.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def _flocked(self, operation: int) -> Iterator[None]:
        self.ensure_ready()
        with self.control_path.open("a") as control:
            fcntl.flock(control.fileno(), operation)
            try:
                yield
            finally:
                fcntl.flock(control.fileno(), fcntl.LOCK_UN)

    def append(self, entry: JournalEntry) -> None:
        # ASCII escapes keep undecodable filenames (lone surrogates) intact
        line = json.dumps(entry.to_record()) + "\n"
        with self._flocked(fcntl.LOCK_EX):
            with self.path.open("a", encoding="utf-8") as journal_file:
                journal_file.write(line)
                journal_file.flush()
                os.fsync(journal_file.fileno())
        LOGGER.debug("Journaled %s for %s", entry.outcome.value, entry.input_path)

    def scan(self) -> JournalScan:
        result = JournalScan(entries=[])
        with self._flocked(fcntl.LOCK_SH):
            if not self.path.exists():
                return result
            with self.path.open("r", encoding="utf-8", errors="surrogateescape") as journal_file:
                for lineno, line in enumerate(journal_file, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        result.entries.append(parse_journal_line(line))
                    except JournalParseError as exc:
                        result.unparseable += 1
                        LOGGER.warning("Skipping journal record %s:%d: %s", self.path, lineno, exc)
        if result.unparseable:
            LOGGER.warning("Dropped %d unparseable journal record(s) from %s", result.unparseable, self.path)
        return result

    def read_all(self) -> List[JournalEntry]:
        return self.scan().entries


def index_entries(entries: List[JournalEntry]) -> Dict[Tuple[str, str], JournalEntry]:
    """
    Build a lookup keyed by ``(input, output)``.

    Later records win, except that a success is never shadowed by a later
    skip or failure for the same key.
    """
    index: Dict[Tuple[str, str], JournalEntry] = {}
    for entry in entries:
        previous = index.get(entry.key)
        if previous is not None and previous.outcome is Outcome.SUCCESS and entry.outcome is not Outcome.SUCCESS:
            continue
        index[entry.key] = entry
    return index


class JournalCache:
    """In-memory journal snapshot, rescanned when older than ``max_age`` seconds."""

    def __init__(self, journal: EncodeJournal, max_age: float = 60.0):
        self.journal = journal
        self.max_age = max_age
        self.loaded_at: Optional[float] = None
        self.index: Dict[Tuple[str, str], JournalEntry] = {}

    def refresh(self) -> None:
        self.index = index_entries(self.journal.read_all())
        self.loaded_at = time.monotonic()
        LOGGER.debug("Loaded %d journal keys from %s", len(self.index), self.journal.path)

    def lookup(self, input_path: str, output_path: str) -> Optional[JournalEntry]:
        if self.loaded_at is None or time.monotonic() - self.loaded_at > self.max_age:
            self.refresh()
        return self.index.get((input_path, output_path))

    def remember(self, entry: JournalEntry) -> None:
        previous = self.index.get(entry.key)
        if previous is not None and previous.outcome is Outcome.SUCCESS and entry.outcome is not Outcome.SUCCESS:
            return
        self.index[entry.key] = entry
