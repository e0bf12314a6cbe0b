#!/usr/bin/env python3
"""ffprobe wrapper and media discovery helpers for the transcoder tools."""

from __future__ import annotations

import json
import logging
import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional


LOGGER = logging.getLogger("media_probe")

VIDEO_EXTENSIONS = {
    ".mp4",
    ".mkv",
    ".avi",
    ".flv",
    ".webm",
    ".mov",
    ".wmv",
    ".mpg",
    ".mpeg",
    ".m4v",
    ".3gp",
    ".3g2",
}

HDR_COLOR_SPACE = "bt2020nc"
HDR_TRANSFERS = {"arib-std-b67", "smpte2084"}


class ProbeError(RuntimeError):
    pass


def _get_int(value) -> int:
    if value in (None, "", "N/A"):
        return 0
    try:
        return int(float(value))
    except (ValueError, TypeError):
        return 0


@dataclass
class StreamData:
    codec_type: str = ""
    codec_name: str = ""
    channels: int = 0
    color_space: str = ""
    color_transfer: str = ""
    color_primaries: str = ""
    width: int = 0
    height: int = 0
    language: str = ""

    @classmethod
    def from_ffprobe(cls, stream: Dict) -> "StreamData":
        tags = stream.get("tags") or {}
        return cls(
            codec_type=stream.get("codec_type") or "",
            codec_name=stream.get("codec_name") or "",
            channels=_get_int(stream.get("channels")),
            color_space=stream.get("color_space") or "",
            color_transfer=stream.get("color_transfer") or "",
            color_primaries=stream.get("color_primaries") or "",
            width=_get_int(stream.get("width")),
            height=_get_int(stream.get("height")),
            language=tags.get("language") or "",
        )

    @property
    def is_video(self) -> bool:
        return self.codec_type == "video"

    @property
    def is_audio(self) -> bool:
        return self.codec_type == "audio"

    @property
    def is_subtitle(self) -> bool:
        return self.codec_type == "subtitle"

    @property
    def is_surround_audio(self) -> bool:
        return self.is_audio and self.channels > 2

    @property
    def is_hdr(self) -> bool:
        return self.is_video and self.color_space == HDR_COLOR_SPACE and self.color_transfer in HDR_TRANSFERS

    def is_maybe_english_audio(self) -> bool:
        # Untagged and "und" tracks are assumed to be English
        language = self.language.lower()
        return language == "" or "und" in language or "en" in language


@dataclass
class ProbeData:
    path: Path
    bit_rate: int = 0
    streams: List[StreamData] = field(default_factory=list)

    @property
    def has_subtitles(self) -> bool:
        return any(stream.is_subtitle for stream in self.streams)

    @property
    def has_hdr(self) -> bool:
        return any(stream.is_hdr for stream in self.streams)

    @property
    def has_surround_audio(self) -> bool:
        return any(stream.is_surround_audio for stream in self.streams)

    @property
    def video_stream(self) -> Optional[StreamData]:
        return next((stream for stream in self.streams if stream.is_video), None)

    def map_stream_index(self, codec_type: str, raw_index: int) -> int:
        """Translate a container-wide stream index into its index among streams of ``codec_type``."""
        return sum(1 for stream in self.streams[:raw_index] if stream.codec_type == codec_type)


def parse_ffprobe_output(path: Path, payload: str) -> ProbeData:
    try:
        data = json.loads(payload or "{}")
    except json.JSONDecodeError as exc:
        raise ProbeError(f"failed to parse ffprobe output for {path}: {exc}") from exc

    format_data = data.get("format") or {}
    bit_rate = _get_int(format_data.get("bit_rate"))
    if not bit_rate:
        LOGGER.warning("ffprobe reported no usable bit rate for %s", path)
    streams = [StreamData.from_ffprobe(stream) for stream in data.get("streams") or []]
    return ProbeData(path=path, bit_rate=bit_rate, streams=streams)


def probe_media(path: Path) -> ProbeData:
    command = [
        "ffprobe",
        "-v",
        "quiet",
        "-print_format",
        "json",
        "-show_format",
        "-show_streams",
        str(path),
    ]
    LOGGER.debug("Running ffprobe: %s", " ".join(command))
    try:
        result = subprocess.run(command, capture_output=True, text=True, check=True)
    except (subprocess.CalledProcessError, OSError) as exc:
        raise ProbeError(f"ffprobe failed for {path}: {exc}") from exc
    return parse_ffprobe_output(path, result.stdout)


def media_in_dir(root: Path, extensions: Iterable[str] = VIDEO_EXTENSIONS) -> List[Path]:
    """
    Recursively list media files under ``root`` in sorted order.

    Raises:
        OSError: ``root`` is missing or a directory cannot be read.
    """
    wanted = {ext.lower() for ext in extensions}
    if not root.is_dir():
        raise NotADirectoryError(f"input directory {root} does not exist")

    def on_error(exc: OSError) -> None:
        LOGGER.error("Failed to access directory: %s", exc)
        raise exc

    matches: List[Path] = []
    for dirpath, _dirnames, filenames in os.walk(root, onerror=on_error):
        for filename in filenames:
            if Path(filename).suffix.lower() in wanted:
                matches.append(Path(dirpath) / filename)
    matches.sort()
    return matches
