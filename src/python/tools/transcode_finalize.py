#!/usr/bin/env python3
"""Remove originals whose transcode finished successfully.

Reads the shared transcode journal and, for every media file under the given
directory that the journal records as successfully transcoded (and whose
output is present), deletes the original. Runs as a dry run unless
``--no-dry-run`` is given.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

from encode_journal import EncodeJournal, JournalEntry, Outcome, default_journal_path
from media_probe import VIDEO_EXTENSIONS, media_in_dir
from transcoder import configure_logging, is_transcode_output


LOGGER = logging.getLogger("transcode_finalize")


def latest_by_input(entries: List[JournalEntry]) -> Dict[str, JournalEntry]:
    latest: Dict[str, JournalEntry] = {}
    for entry in entries:
        previous = latest.get(entry.input_path)
        if previous is not None and previous.outcome is Outcome.SUCCESS and entry.outcome is not Outcome.SUCCESS:
            continue
        latest[entry.input_path] = entry
    return latest


def finalize(root: Path, journal: EncodeJournal, dry_run: bool = True) -> List[Path]:
    """
    Delete (or, in a dry run, list) originals with a successful transcode.

    Returns:
        The originals that were removed, or would be removed in a dry run.
    """
    matches = media_in_dir(root, VIDEO_EXTENSIONS)
    LOGGER.info("Found %d video files", len(matches))
    entries = latest_by_input(journal.read_all())

    removed: List[Path] = []
    for match in matches:
        if is_transcode_output(match):
            continue
        entry = entries.get(str(match))
        if entry is None:
            LOGGER.debug("Media file %s does not exist in transcode journal", match)
            continue
        if entry.outcome is Outcome.FAILURE:
            LOGGER.warning("Media file %s has errors in transcode journal, keeping: %s", match, entry.error)
            continue
        if entry.outcome is Outcome.SKIPPED:
            LOGGER.warning("Media file %s was skipped in transcode journal, keeping: %s", match, entry.skipped)
            continue
        if not Path(entry.output_path).exists():
            LOGGER.warning("Transcode output %s is missing, keeping %s", entry.output_path, match)
            continue

        if dry_run:
            LOGGER.info("Would remove original media file %s", match)
            removed.append(match)
            continue

        LOGGER.info("Removing original media file %s", match)
        try:
            match.unlink()
        except OSError as exc:
            LOGGER.warning("Failed to remove original media file %s: %s", match, exc)
            continue
        removed.append(match)
    return removed


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Remove originals that have been transcoded successfully")
    parser.add_argument("finalize_root", type=Path, help="Directory holding the originals")
    parser.add_argument("--journal", type=Path, default=default_journal_path(), help="Path to the shared transcode journal (NDJSON)")
    parser.add_argument("--dry-run", dest="dry_run", action="store_true", default=True, help="Only report what would be removed (default)")
    parser.add_argument("--no-dry-run", dest="dry_run", action="store_false", help="Actually remove originals")
    parser.add_argument("--log-file", type=Path, help="Optional log file path")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def run(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args)

    root = args.finalize_root.resolve()
    LOGGER.info("Finalizing directory: %s", root)
    try:
        removed = finalize(root, EncodeJournal(args.journal.resolve()), dry_run=args.dry_run)
    except OSError as exc:
        LOGGER.error("Error finalizing %s: %s", root, exc)
        return 2

    verb = "Would remove" if args.dry_run else "Removed"
    LOGGER.info("%s %d original(s)", verb, len(removed))
    return 0


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
