"""
tally.py - Counts in, grouped statistics out.

aggregate() takes FileCounts (and optionally sample MatchRecords) and builds a
Report for one grouping: summary, detailed, by extension, by directory, top-N
files, or a per-day timeline of file modification dates.

Rules that every grouping follows:
    - summary totals always include every file, thresholds never hide matches
    - rows drop files below min_matches
    - row order is fully determined by the data (never by dict/set order)

No external dependencies. Pure stdlib.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, datetime
from pathlib import Path
from typing import Callable, Iterable

from .errors import SnipeIOError
from .models import FileCount, MatchRecord, Report, ReportKind, ReportRow, SummaryMetrics

logger = logging.getLogger(__name__)

NO_EXTENSION = "(no extension)"
UNKNOWN_DAY = "(unknown)"


def extension_of(path: Path | str) -> str:
    """Substring after the final '.' in the file name, or "(no extension)"."""
    name = Path(path).name
    if "." not in name:
        return NO_EXTENSION
    ext = name.rsplit(".", 1)[1]
    return ext or NO_EXTENSION


def directory_of(path: Path | str) -> str:
    """Parent path component, as a posix string ("." for bare file names)."""
    return Path(path).parent.as_posix()


def modified_day(path: Path | str) -> date:
    """File modification date, truncated to the day (local time)."""
    try:
        return datetime.fromtimestamp(Path(path).stat().st_mtime).date()
    except OSError as e:
        raise SnipeIOError(path, e) from e


def summarize(counts: Iterable[FileCount]) -> SummaryMetrics:
    """Totals over every entry. Average only when at least one file matched."""
    total = 0
    files = 0
    for fc in counts:
        total += fc.count
        if fc.count > 0:
            files += 1
    average = total / files if files else None
    return SummaryMetrics(total_matches=total, files_with_matches=files, average=average)


def _grouped(counts: list[FileCount], key_fn: Callable[[Path], str]) -> list[ReportRow]:
    matches: dict[str, int] = defaultdict(int)
    files: dict[str, int] = defaultdict(int)
    for fc in counts:
        key = key_fn(fc.file)
        matches[key] += fc.count
        files[key] += 1
    rows = [ReportRow(key=k, matches=matches[k], files=files[k]) for k in matches]
    # Busiest group first; ties broken by key so output never depends on input order
    rows.sort(key=lambda r: (-r.matches, r.key))
    return rows


def _day_key(day_of: Callable[[Path], date]) -> Callable[[Path], str]:
    """ISO day per file. Files that can't be stat'ed land under UNKNOWN_DAY."""

    def key(path: Path) -> str:
        try:
            return day_of(path).isoformat()
        except SnipeIOError as e:
            logger.warning(f"Timeline: {e}")
            return UNKNOWN_DAY

    return key


def _file_rows(counts: list[FileCount]) -> list[ReportRow]:
    return [ReportRow(key=Path(fc.file).as_posix(), matches=fc.count) for fc in counts]


def aggregate(
    counts: Iterable[FileCount],
    group_by: ReportKind | str = ReportKind.SUMMARY,
    *,
    min_matches: int = 0,
    top_n: int = 10,
    samples: Iterable[MatchRecord] = (),
    mtime_of: Callable[[Path], date] | None = None,
) -> Report:
    """
    Build a Report from per-file counts.

    Args:
        counts:      FileCount sequence from QueryExecutor.execute_counts().
        group_by:    ReportKind (or its value, e.g. "extension").
        min_matches: Files below this count are left out of the rows but still
                     contribute to the summary.
        top_n:       Row limit for TOP_FILES.
        samples:     Example MatchRecords carried along for rendering.
        mtime_of:    Path -> date, for TIMELINE. Defaults to the file's mtime.

    Returns:
        Report with deterministic row order:
            DETAILED      path ascending
            TOP_FILES     count descending, path ascending
            BY_EXTENSION  matches descending, key ascending
            BY_DIRECTORY  matches descending, key ascending
            TIMELINE      date ascending, UNKNOWN_DAY last
    """
    kind = ReportKind(group_by)
    entries = [fc for fc in counts if fc.count > 0]
    summary = summarize(entries)
    kept = [fc for fc in entries if fc.count >= min_matches]

    if kind is ReportKind.SUMMARY:
        rows: list[ReportRow] = []
    elif kind is ReportKind.DETAILED:
        rows = sorted(_file_rows(kept), key=lambda r: r.key)
    elif kind is ReportKind.TOP_FILES:
        rows = sorted(_file_rows(kept), key=lambda r: (-r.matches, r.key))[: max(top_n, 0)]
    elif kind is ReportKind.BY_EXTENSION:
        rows = _grouped(kept, extension_of)
    elif kind is ReportKind.BY_DIRECTORY:
        rows = _grouped(kept, directory_of)
    else:
        rows = _grouped(kept, _day_key(mtime_of or modified_day))
        rows.sort(key=lambda r: (r.key == UNKNOWN_DAY, r.key))

    return Report(
        kind=kind,
        rows=tuple(rows),
        summary=summary,
        samples=tuple(samples),
        min_matches=min_matches,
        top_n=top_n if kind is ReportKind.TOP_FILES else None,
    )
