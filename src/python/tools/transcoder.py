#!/usr/bin/env python3
"""Batch transcoder for a directory of media files.

Walks an input directory, transcodes every eligible video to HEVC/Opus next to
its source (``movie.mp4`` -> ``movie.transcoded.mkv``), and records each
outcome in a shared append-only journal. Any number of instances may run
against the same tree: a host-wide named lock set keeps two processes off the
same output, and the journal makes re-runs skip work that already finished,
failed or was judged not worth doing.
"""

from __future__ import annotations

import argparse
import enum
import logging
import subprocess
import sys
import time
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Protocol, Tuple

from tqdm import tqdm

from encode_journal import (
    EncodeJournal,
    JournalCache,
    JournalEntry,
    Outcome,
    default_journal_path,
    format_duration,
    human_time,
)
from media_probe import VIDEO_EXTENSIONS, ProbeData, ProbeError, media_in_dir, probe_media
from named_lockset import LockHeldError, NamedLockSet, default_lock_path


LOGGER = logging.getLogger("transcoder")

OUTPUT_MARKER = ".transcoded"
OUTPUT_EXT = ".mkv"
PARTIAL_SUFFIX = ".partial.mkv"

DEFAULT_MIN_BIT_RATE = 2_000_000
DEFAULT_CRF = 28
DEFAULT_PRESET = "fast"
DEFAULT_JOURNAL_REFRESH_SEC = 60.0

STEREO_AUDIO_BITRATE = "128k"
SURROUND_AUDIO_BITRATE = "384k"


def ensure_python_version() -> None:
    if sys.version_info < (3, 9):
        raise RuntimeError("transcoder requires Python 3.9 or newer")


def is_transcode_output(path: Path) -> bool:
    return OUTPUT_MARKER in path.suffixes


def output_path_for(input_path: Path) -> Path:
    return input_path.with_name(f"{input_path.stem}{OUTPUT_MARKER}{OUTPUT_EXT}")


def temp_path_for(output_path: Path) -> Path:
    return output_path.with_name(output_path.name + PARTIAL_SUFFIX)


@dataclass(frozen=True)
class Job:
    input_path: Path
    output_path: Path

    @classmethod
    def for_input(cls, input_path: Path) -> "Job":
        return cls(input_path=input_path, output_path=output_path_for(input_path))

    @property
    def temp_path(self) -> Path:
        return temp_path_for(self.output_path)

    @property
    def key(self) -> Tuple[str, str]:
        return (str(self.input_path), str(self.output_path))

    @property
    def lock_name(self) -> str:
        return str(self.output_path)


class JobState(enum.Enum):
    DISCOVERED = "discovered"
    ALREADY_MARKED = "already_marked"
    ELIGIBLE = "eligible"
    CHECKING_JOURNAL = "checking_journal"
    EXCLUDED = "excluded"
    INSPECTING = "inspecting"
    SKIPPED_LOW_VALUE = "skipped_low_value"
    PLANNED = "planned"
    ACQUIRING = "acquiring"
    LOST_RACE = "lost_race"
    HOLDING = "holding"
    TRANSFORMING = "transforming"
    RECORDED_RENAMED = "recorded_renamed"
    RECORDED_CLEANED = "recorded_cleaned"
    ABANDONED = "abandoned"


TERMINAL_STATES = {
    JobState.ALREADY_MARKED,
    JobState.EXCLUDED,
    JobState.SKIPPED_LOW_VALUE,
    JobState.PLANNED,
    JobState.LOST_RACE,
    JobState.RECORDED_RENAMED,
    JobState.RECORDED_CLEANED,
    JobState.ABANDONED,
}


@dataclass
class JobResult:
    job: Job
    state: JobState
    reason: str = ""


class TransformError(RuntimeError):
    def __init__(self, reason: str, args: Optional[List[str]] = None):
        super().__init__(reason)
        self.command = list(args or [])


class Transform(Protocol):
    def invoke(self, input_path: Path, temp_output_path: Path, probe: ProbeData) -> List[str]:
        ...


class SetupError(RuntimeError):
    pass


def build_ffmpeg_args(
    input_path: Path,
    output_path: Path,
    probe: ProbeData,
    crf: int = DEFAULT_CRF,
    preset: str = DEFAULT_PRESET,
) -> List[str]:
    """
    Build the ffmpeg command line for one transcode.

    The first video stream is re-encoded with libx265. HDR sources keep 10-bit
    output and their colour metadata. Audio tracks tagged (or assumed to be)
    English are kept when any exist, otherwise every audio track is kept; each
    is encoded to Opus with a bitrate sized for its channel count. Subtitle
    tracks are carried over.
    """
    args = ["ffmpeg", "-hide_banner", "-nostdin", "-y", "-i", str(input_path), "-map", "0:v:0"]

    audio = [(raw, stream) for raw, stream in enumerate(probe.streams) if stream.is_audio]
    english = [(raw, stream) for raw, stream in audio if stream.is_maybe_english_audio()]
    selected_audio = english or audio
    for raw, _stream in selected_audio:
        args.extend(["-map", f"0:a:{probe.map_stream_index('audio', raw)}"])

    subtitles = [stream for stream in probe.streams if stream.is_subtitle]
    if subtitles:
        args.extend(["-map", "0:s?"])

    args.extend(["-c:v", "libx265", "-crf", str(crf), "-preset", preset])

    video = probe.video_stream
    if probe.has_hdr and video is not None:
        x265_params = ":".join(
            [
                "hdr-opt=1",
                "repeat-headers=1",
                f"colorprim={video.color_primaries or 'bt2020'}",
                f"transfer={video.color_transfer}",
                f"colormatrix={video.color_space}",
            ]
        )
        args.extend(["-pix_fmt", "yuv420p10le", "-x265-params", x265_params])

    if selected_audio:
        args.extend(["-c:a", "libopus"])
        for out_index, (_raw, stream) in enumerate(selected_audio):
            bitrate = SURROUND_AUDIO_BITRATE if stream.is_surround_audio else STEREO_AUDIO_BITRATE
            args.extend([f"-b:a:{out_index}", bitrate])
        if any(stream.is_surround_audio for _raw, stream in selected_audio):
            args.extend(["-mapping_family", "1"])

    for out_index, stream in enumerate(subtitles):
        # mov_text only lives in MP4; Matroska takes it as SRT
        codec = "srt" if stream.codec_name == "mov_text" else "copy"
        args.extend([f"-c:s:{out_index}", codec])

    args.append(str(output_path))
    return args


class FfmpegTransform:
    def __init__(self, crf: int = DEFAULT_CRF, preset: str = DEFAULT_PRESET):
        self.crf = crf
        self.preset = preset

    def invoke(self, input_path: Path, temp_output_path: Path, probe: ProbeData) -> List[str]:
        command = build_ffmpeg_args(input_path, temp_output_path, probe, crf=self.crf, preset=self.preset)
        LOGGER.debug("Running FFmpeg: %s", " ".join(command))
        try:
            result = subprocess.run(command, capture_output=True, text=True)
        except OSError as exc:
            raise TransformError(f"could not start ffmpeg: {exc}", command) from exc
        if result.returncode != 0:
            stderr_preview = (result.stderr or "").splitlines()[-5:]
            raise TransformError(
                f"ffmpeg exited with return code {result.returncode}\n" + "\n".join(stderr_preview),
                command,
            )
        return command


def _discard(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        LOGGER.warning("Failed to delete temporary file %s: %s", path, exc)


class Orchestrator:
    """Per-file state machine tying the journal, the lock set and the transform together."""

    def __init__(
        self,
        journal: EncodeJournal,
        lockset: NamedLockSet,
        transform: Transform,
        inspector: Optional[Callable[[Path], ProbeData]] = None,
        min_bit_rate: int = DEFAULT_MIN_BIT_RATE,
        journal_refresh: float = DEFAULT_JOURNAL_REFRESH_SEC,
        retry_failed: bool = False,
        dry_run: bool = False,
    ):
        self.journal = journal
        self.lockset = lockset
        self.transform = transform
        self.inspector = inspector or probe_media
        self.min_bit_rate = min_bit_rate
        self.retry_failed = retry_failed
        self.dry_run = dry_run
        self.cache = JournalCache(journal, max_age=journal_refresh)

    def _enter(self, job: Job, state: JobState) -> None:
        LOGGER.debug("Item %s -> %s", job.input_path, state.value)

    def _finish(self, job: Job, state: JobState, reason: str = "") -> JobResult:
        if state is JobState.ABANDONED:
            LOGGER.error("Item %s abandoned: %s", job.input_path, reason)
        elif reason:
            LOGGER.info("Item %s %s: %s", job.input_path, state.value, reason)
        else:
            LOGGER.info("Item %s %s", job.input_path, state.value)
        return JobResult(job=job, state=state, reason=reason)

    def _journal_exclusion(self, entry: Optional[JournalEntry]) -> Optional[str]:
        if entry is None:
            return None
        if entry.outcome is Outcome.SUCCESS:
            return f"already transcoded in {entry.duration}"
        if entry.outcome is Outcome.SKIPPED:
            return f"previously skipped: {entry.skipped}"
        if self.retry_failed:
            LOGGER.info("Retrying %s despite earlier failure: %s", entry.input_path, entry.error)
            return None
        return f"previous attempt failed: {entry.error}"

    def _record(self, entry: JournalEntry) -> None:
        self.journal.append(entry)
        self.cache.remember(entry)

    def process(self, input_path: Path) -> JobResult:
        job = Job.for_input(input_path)
        self._enter(job, JobState.DISCOVERED)

        if is_transcode_output(input_path):
            return self._finish(job, JobState.ALREADY_MARKED, "file is itself a transcode output")
        self._enter(job, JobState.ELIGIBLE)

        self._enter(job, JobState.CHECKING_JOURNAL)
        try:
            previous = self.cache.lookup(*job.key)
        except OSError as exc:
            return self._finish(job, JobState.ABANDONED, f"cannot read journal: {exc}")
        reason = self._journal_exclusion(previous)
        if reason:
            return self._finish(job, JobState.EXCLUDED, reason)

        self._enter(job, JobState.INSPECTING)
        try:
            probe = self.inspector(input_path)
        except ProbeError as exc:
            return self._finish(job, JobState.ABANDONED, str(exc))

        if not probe.bit_rate:
            LOGGER.warning("Bit rate of %s is unknown; transcoding anyway", input_path)
        elif probe.bit_rate < self.min_bit_rate:
            reason = f"bit rate {probe.bit_rate // 1000} kbps is below {self.min_bit_rate // 1000} kbps"
            if self.dry_run:
                return self._finish(job, JobState.SKIPPED_LOW_VALUE, f"would skip, {reason}")
            try:
                self._record(JournalEntry.skip(str(job.input_path), str(job.output_path), reason))
            except (OSError, ValueError) as exc:
                return self._finish(job, JobState.ABANDONED, f"cannot journal skip: {exc}")
            return self._finish(job, JobState.SKIPPED_LOW_VALUE, reason)

        if self.dry_run:
            return self._finish(job, JobState.PLANNED, "would transcode")

        self._enter(job, JobState.ACQUIRING)
        try:
            with self.lockset.held(job.lock_name):
                return self._process_locked(job, probe)
        except LockHeldError as exc:
            return self._finish(job, JobState.LOST_RACE, f"already transcoding by another process (PID {exc.owner})")
        except OSError as exc:
            return self._finish(job, JobState.ABANDONED, f"coordination error: {exc}")
        except ValueError as exc:
            # Raised while encoding the outcome record
            return self._finish(job, JobState.ABANDONED, f"cannot journal outcome: {exc}")

    def _process_locked(self, job: Job, probe: ProbeData) -> JobResult:
        self._enter(job, JobState.HOLDING)
        # The journal check above is stale by now; another process may have finished.
        self.cache.refresh()
        reason = self._journal_exclusion(self.cache.index.get(job.key))
        if reason:
            return self._finish(job, JobState.EXCLUDED, reason)
        if job.output_path.exists():
            # Unjournaled output; record it so later runs stop at the journal check
            reason = "output already exists"
            self._record(JournalEntry.skip(str(job.input_path), str(job.output_path), reason))
            return self._finish(job, JobState.EXCLUDED, reason)

        try:
            job.output_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            return self._finish(job, JobState.ABANDONED, f"cannot create output directory: {exc}")

        # Leftover from a process that died mid-transcode
        _discard(job.temp_path)

        self._enter(job, JobState.TRANSFORMING)
        LOGGER.info("Transcoding %s -> %s", job.input_path, job.output_path)
        started_at = human_time()
        started = time.monotonic()
        try:
            command = self.transform.invoke(job.input_path, job.temp_path, probe)
            job.temp_path.replace(job.output_path)
        except TransformError as exc:
            _discard(job.temp_path)
            self._record(
                JournalEntry.failure(
                    str(job.input_path),
                    str(job.output_path),
                    started_at,
                    format_duration(time.monotonic() - started),
                    exc.command,
                    str(exc),
                )
            )
            return self._finish(job, JobState.RECORDED_CLEANED, str(exc))
        except OSError as exc:
            _discard(job.temp_path)
            self._record(
                JournalEntry.failure(
                    str(job.input_path),
                    str(job.output_path),
                    started_at,
                    format_duration(time.monotonic() - started),
                    [],
                    f"cannot move transcode into place: {exc}",
                )
            )
            return self._finish(job, JobState.RECORDED_CLEANED, str(exc))
        except BaseException:
            _discard(job.temp_path)
            raise

        duration = format_duration(max(time.monotonic() - started, 1e-6))
        self._record(JournalEntry.success(str(job.input_path), str(job.output_path), started_at, duration, command))
        return self._finish(job, JobState.RECORDED_RENAMED, f"transcoded in {duration}")


def open_coordination(journal_path: Path, lock_path: Path) -> Tuple[EncodeJournal, NamedLockSet]:
    journal = EncodeJournal(journal_path)
    try:
        journal.ensure_ready()
        lockset = NamedLockSet(lock_path)
    except OSError as exc:
        raise SetupError(f"cannot prepare coordination files: {exc}") from exc
    return journal, lockset


def configure_logging(args: argparse.Namespace) -> None:
    log_level = logging.DEBUG if args.verbose else logging.INFO
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if args.log_file:
        handlers.append(logging.FileHandler(args.log_file, encoding="utf-8"))
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        handlers=handlers,
    )


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Transcode a directory of videos, coordinating with other instances")
    parser.add_argument("input_root", type=Path, help="Directory to scan for videos")
    parser.add_argument("--journal", type=Path, default=default_journal_path(), help="Path to the shared transcode journal (NDJSON)")
    parser.add_argument("--lock-file", type=Path, default=default_lock_path(), help="Path to the host-wide named lock set")
    parser.add_argument("--min-bit-rate", type=int, default=DEFAULT_MIN_BIT_RATE, help="Skip sources below this bit rate in bits/s (default: 2000000)")
    parser.add_argument("--extensions", type=str, default=",".join(sorted(VIDEO_EXTENSIONS)), help="Comma-separated list of video extensions to include")
    parser.add_argument("--journal-refresh", type=float, default=DEFAULT_JOURNAL_REFRESH_SEC, help="Seconds before the cached journal is re-read")
    parser.add_argument("--crf", type=int, default=DEFAULT_CRF, help="libx265 CRF (default: 28)")
    parser.add_argument("--preset", type=str, default=DEFAULT_PRESET, help="libx265 preset (default: fast)")
    parser.add_argument("--max-files", type=int, help="Limit the number of candidates examined in this run")
    parser.add_argument("--retry-failed", action="store_true", help="Retry files whose previous attempt is journaled as failed")
    parser.add_argument("--dry-run", action="store_true", help="Report what would be transcoded without touching anything")
    parser.add_argument("--progress", action="store_true", help="Display progress bar")
    parser.add_argument("--log-file", type=Path, help="Optional log file path")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def run(argv: Optional[List[str]] = None, transform: Optional[Transform] = None) -> int:
    ensure_python_version()
    args = parse_args(argv)
    configure_logging(args)

    input_root = args.input_root.resolve()
    extensions = [ext if ext.startswith(".") else f".{ext}" for ext in args.extensions.split(",") if ext]

    LOGGER.info("Input directory: %s", input_root)
    try:
        journal, lockset = open_coordination(args.journal.resolve(), args.lock_file.resolve())
        candidates = media_in_dir(input_root, extensions)
    except (SetupError, OSError) as exc:
        LOGGER.error("Setup failed: %s", exc)
        return 2

    LOGGER.info("Found %d video files", len(candidates))
    if args.max_files is not None:
        if args.max_files <= 0:
            LOGGER.warning("--max-files must be greater than zero; no work will be performed")
            candidates = []
        else:
            candidates = candidates[: args.max_files]

    orchestrator = Orchestrator(
        journal,
        lockset,
        transform or FfmpegTransform(crf=args.crf, preset=args.preset),
        min_bit_rate=args.min_bit_rate,
        journal_refresh=args.journal_refresh,
        retry_failed=args.retry_failed,
        dry_run=args.dry_run,
    )

    counts: Counter = Counter()
    progress_bar = tqdm(total=len(candidates), desc="Transcoding", unit="video") if args.progress else None
    try:
        for candidate in candidates:
            result = orchestrator.process(candidate)
            counts[result.state] += 1
            if progress_bar is not None:
                progress_bar.update(1)
    except KeyboardInterrupt:
        LOGGER.warning("Processing aborted via Ctrl+C")
        return 130
    finally:
        if progress_bar is not None:
            progress_bar.close()

    summary = ", ".join(f"{counts[state]} {state.value}" for state in JobState if counts[state])
    LOGGER.info("All items processed: %s", summary or "nothing to do")
    return 0


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
