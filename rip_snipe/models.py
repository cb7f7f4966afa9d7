"""rip_snipe data models. Every struct that flows between builder, executor, tally and swap."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from .errors import SnipeIOError


class MatchMode(str, Enum):
    REGEX = "regex"
    LITERAL = "literal"


class CaseMode(str, Enum):
    SENSITIVE = "sensitive"
    INSENSITIVE = "insensitive"
    SMART = "smart"  # sensitive iff the pattern has an uppercase letter


class ReportKind(str, Enum):
    SUMMARY = "summary"
    DETAILED = "detailed"
    BY_EXTENSION = "extension"
    BY_DIRECTORY = "directory"
    TOP_FILES = "top"
    TIMELINE = "timeline"


@dataclass(frozen=True)
class ContextLines:
    before: int = 0
    after: int = 0


@dataclass(frozen=True)
class SearchSpec:
    """Canonical, validated search or replace request. Built by spec_forge.build()."""

    pattern: str
    replacement: str | None = None
    mode: MatchMode = MatchMode.REGEX
    case: CaseMode = CaseMode.SMART
    word_boundary: bool = False
    multiline: bool = False
    dotall: bool = False
    advanced_engine: bool = False
    file_types: frozenset[str] = frozenset()
    glob_includes: frozenset[str] = frozenset()
    glob_excludes: frozenset[str] = frozenset()
    context: ContextLines = ContextLines()
    max_depth: int | None = None
    include_hidden: bool = False
    respect_ignore_files: bool = True
    max_matches_per_file: int | None = None
    line_filters: tuple[str, ...] = ()  # every one must match the line too
    max_filesize: int | None = None  # bytes
    changed_within: timedelta | None = None

    @property
    def is_literal(self) -> bool:
        return self.mode is MatchMode.LITERAL

    @property
    def case_sensitive(self) -> bool:
        """Resolve SMART against the pattern."""
        if self.case is CaseMode.SENSITIVE:
            return True
        if self.case is CaseMode.INSENSITIVE:
            return False
        return any(ch.isupper() for ch in self.pattern)


@dataclass(frozen=True)
class MatchRecord:
    """One located occurrence. Spans are character offsets into text."""

    file: Path
    line: int
    text: str
    spans: tuple[tuple[int, int], ...] = ()
    before: tuple[str, ...] = ()
    after: tuple[str, ...] = ()

    @property
    def matched(self) -> list[str]:
        return [self.text[start:end] for start, end in self.spans]


@dataclass(frozen=True)
class FileCount:
    file: Path
    count: int


@dataclass(frozen=True)
class ReportRow:
    """One grouped line of a report: group key plus its aggregate metrics."""

    key: str
    matches: int
    files: int = 1


@dataclass(frozen=True)
class SummaryMetrics:
    total_matches: int
    files_with_matches: int
    average: float | None  # None == "no matches"

    @property
    def has_matches(self) -> bool:
        return self.files_with_matches > 0


@dataclass(frozen=True)
class Report:
    """Grouped statistics, built fresh per invocation. Never persisted."""

    kind: ReportKind
    rows: tuple[ReportRow, ...]
    summary: SummaryMetrics
    samples: tuple[MatchRecord, ...] = ()
    min_matches: int = 0
    top_n: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """JSON-serializable dict."""
        from .formatters import report_to_json
        return report_to_json(self)


@dataclass(frozen=True)
class PreviewRecord:
    """A match plus what its line would look like after substitution."""

    record: MatchRecord
    replaced: str
    replacements: int


@dataclass(frozen=True)
class ReplacementPlan:
    """
    Resolved file list for one substitution run. Consumed exactly once.

    lines maps each target file to the line numbers its preview showed;
    only those lines are rewritten. A file missing from it is rewritten whole.
    """

    spec: SearchSpec
    target_files: tuple[Path, ...]
    backup: bool = True
    lines: dict[Path, frozenset[int]] = field(default_factory=dict, hash=False)


@dataclass
class ApplyResult:
    """Outcome of ReplacementWorkflow.apply(). Successes and failures side by side."""

    total: int
    processed: int = 0
    replacements: int = 0
    failed: list[tuple[Path, SnipeIOError]] = field(default_factory=list)
    changed: list[Path] = field(default_factory=list)
    backups: list[Path] = field(default_factory=list)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed and not self.cancelled

    def describe(self) -> str:
        if self.cancelled:
            return f"{self.processed} of {self.total} files processed before cancellation"
        text = f"{self.processed} of {self.total} files processed, {self.replacements} replacements"
        if self.failed:
            text += f", {len(self.failed)} failed"
        return text
