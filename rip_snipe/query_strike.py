"""
query_strike.py - Turns a SearchSpec into engine strikes.

QueryExecutor sits between a SearchSpec and the engine:
    plan()            SearchSpec -> EngineQuery (pure, deterministic)
    execute()         lazy MatchRecord stream, engine emission order
    execute_counts()  FileCount stream (fast path, no line extraction)
    first_match()     stop after one record, engine cancelled
    matching_files()  ordered, de-duplicated file list for replacement plans

Path validation happens before any query runs. Line filters (log levels) and
the changed-within window are applied here, on top of whatever the engine
returns, so every engine gets them for free.
"""

from __future__ import annotations

import logging
import re
import time
from datetime import datetime
from pathlib import Path
from typing import Iterable, Iterator

from .errors import PathNotFoundError, PatternError
from .models import CaseMode, FileCount, MatchRecord, SearchSpec
from .ripgrep import EngineQuery, SearchEngine, default_engine

logger = logging.getLogger(__name__)

# Lookaround and backreferences need the advanced (PCRE2) engine
_ADVANCED_SYNTAX = re.compile(r"\(\?<?[=!]|\\[1-9]|\\k<")

# One or more leading inline-flag groups, e.g. (?i)(?s) or (?is)
_LEADING_FLAGS = re.compile(r"^(?:\(\?[a-zA-Z]+\))+")


def needs_advanced_engine(pattern: str) -> bool:
    """True if the regex uses lookaround or backreferences."""
    return bool(_ADVANCED_SYNTAX.search(pattern))


def inject_dotall(pattern: str) -> str:
    """Prefix (?s) unless a leading inline-flag group already sets it."""
    leading = _LEADING_FLAGS.match(pattern)
    if leading and "s" in leading.group(0).replace("(?", "").replace(")", ""):
        return pattern
    return "(?s)" + pattern


def _resolve_roots(roots: Iterable[Path | str] | None) -> list[Path]:
    resolved = [Path(r) for r in (roots or [])] or [Path(".")]
    for root in resolved:
        if not root.exists():
            raise PathNotFoundError(root)
    return resolved


class QueryExecutor:
    """
    Adapter from SearchSpec to a SearchEngine.

        executor = QueryExecutor()                  # rg if installed
        executor = QueryExecutor(PythonEngine())    # injected engine
        for record in executor.execute(spec, ["src/"]):
            ...
    """

    def __init__(self, engine: SearchEngine | None = None):
        self.engine = engine or default_engine()

    def plan(self, spec: SearchSpec) -> EngineQuery:
        """
        Translate a spec into one engine invocation.

        Advanced engine when requested or when the pattern needs it (never for
        literal mode). Multiline + dotall on the advanced engine injects (?s)
        into the pattern exactly once.
        """
        literal = spec.is_literal
        pattern = spec.pattern
        pcre2 = not literal and (spec.advanced_engine or needs_advanced_engine(pattern))
        dotall = spec.multiline and spec.dotall and not literal
        if pcre2 and dotall:
            pattern = inject_dotall(pattern)

        return EngineQuery(
            pattern=pattern,
            fixed_strings=literal,
            # Smart case resolved against the raw pattern, so the S in \S counts
            case=CaseMode.SENSITIVE if spec.case_sensitive else CaseMode.INSENSITIVE,
            word=spec.word_boundary,
            multiline=spec.multiline and not literal,
            dotall=dotall,
            pcre2=pcre2,
            file_types=tuple(sorted(spec.file_types)),
            globs=tuple(sorted(spec.glob_includes)),
            excludes=tuple(sorted(spec.glob_excludes)),
            before=spec.context.before,
            after=spec.context.after,
            max_depth=spec.max_depth,
            hidden=spec.include_hidden,
            no_ignore=not spec.respect_ignore_files,
            # Per-file caps must count filtered lines, so filtering runs first
            max_count=None if spec.line_filters else spec.max_matches_per_file,
            max_filesize=spec.max_filesize,
        )

    # ------------------------------------------------------------------
    # Filters applied above the engine
    # ------------------------------------------------------------------

    def _line_filters(self, spec: SearchSpec) -> list[re.Pattern]:
        try:
            return [re.compile(f, re.IGNORECASE) for f in spec.line_filters]
        except re.error as e:
            raise PatternError(f"Invalid line filter: {e}", e) from e

    def _fresh_check(self, spec: SearchSpec):
        """Return a path -> bool predicate for the changed-within window, or None."""
        if spec.changed_within is None:
            return None
        cutoff = datetime.now().timestamp() - spec.changed_within.total_seconds()
        seen: dict[Path, bool] = {}

        def fresh(path: Path) -> bool:
            if path not in seen:
                try:
                    seen[path] = path.stat().st_mtime >= cutoff
                except OSError:
                    seen[path] = False
            return seen[path]

        return fresh

    # ------------------------------------------------------------------
    # Streams
    # ------------------------------------------------------------------

    def execute(
        self,
        spec: SearchSpec,
        roots: Iterable[Path | str] | None = None,
    ) -> Iterator[MatchRecord]:
        """
        Lazy MatchRecord stream in engine emission order.

        Raises PathNotFoundError immediately (before any query) for a missing
        root. PatternError / EngineError surface on first iteration. Closing
        the returned generator cancels the underlying engine query.
        """
        resolved = _resolve_roots(roots)
        query = self.plan(spec)
        filters = self._line_filters(spec)
        return self._records(spec, query, resolved, filters)

    def _records(
        self,
        spec: SearchSpec,
        query: EngineQuery,
        roots: list[Path],
        filters: list[re.Pattern],
    ) -> Iterator[MatchRecord]:
        fresh = self._fresh_check(spec)
        cap = spec.max_matches_per_file if filters else None
        per_file: dict[Path, int] = {}
        start = time.perf_counter()
        emitted = 0

        records = self.engine.search(query, roots)
        try:
            for record in records:
                if filters and not all(f.search(record.text) for f in filters):
                    continue
                if fresh is not None and not fresh(record.file):
                    continue
                if cap is not None:
                    if per_file.get(record.file, 0) >= cap:
                        continue
                    per_file[record.file] = per_file.get(record.file, 0) + 1
                emitted += 1
                yield record
        finally:
            close = getattr(records, "close", None)
            if close is not None:
                close()
            elapsed_ms = (time.perf_counter() - start) * 1000
            logger.info(f"{self.engine.name}: {emitted} records in {elapsed_ms:.0f}ms")

    def execute_counts(
        self,
        spec: SearchSpec,
        roots: Iterable[Path | str] | None = None,
    ) -> list[FileCount]:
        """
        Per-file match counts, in engine emission order.

        Uses the engine's count path unless line filters are active; those need
        the line text, so counts are derived from the filtered record stream.
        """
        resolved = _resolve_roots(roots)
        query = self.plan(spec)
        filters = self._line_filters(spec)

        if filters:
            counts: dict[Path, int] = {}
            for record in self._records(spec, query, resolved, filters):
                counts[record.file] = counts.get(record.file, 0) + max(1, len(record.spans))
            return [FileCount(file=f, count=c) for f, c in counts.items()]

        fresh = self._fresh_check(spec)
        start = time.perf_counter()
        result = [
            fc for fc in self.engine.count_per_file(query, resolved)
            if fc.count > 0 and (fresh is None or fresh(fc.file))
        ]
        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.info(f"{self.engine.name}: {len(result)} files with matches in {elapsed_ms:.0f}ms")
        return result

    def first_match(
        self,
        spec: SearchSpec,
        roots: Iterable[Path | str] | None = None,
    ) -> MatchRecord | None:
        """First record only. The engine query is cancelled right after."""
        records = self.execute(spec, roots)
        try:
            return next(records, None)
        finally:
            records.close()

    def matching_files(
        self,
        spec: SearchSpec,
        roots: Iterable[Path | str] | None = None,
    ) -> list[Path]:
        """Files with at least one match, first-seen order, no duplicates."""
        seen: dict[Path, None] = {}
        for fc in self.execute_counts(spec, roots):
            seen.setdefault(fc.file, None)
        return list(seen)
