"""
formatters.py - Text, JSON Lines and CSV/TSV output for reports, matches and previews.

Every layout carries the same Report data; only the shape changes:
    text   human-readable layouts, one per report kind
    json   one JSON object per line (rows first, summary last)
    csv    delimited table with a header row
    tsv    same, tab-delimited
"""

from __future__ import annotations

import csv
import io
import json
from typing import Any, Iterable

from .models import ApplyResult, MatchRecord, PreviewRecord, Report, ReportKind

FORMATS = ("text", "json", "csv", "tsv")

HEAVY_BAR = "=" * 60
LIGHT_BAR = "-" * 60

_TITLES = {
    ReportKind.SUMMARY: "SEARCH STATISTICS",
    ReportKind.DETAILED: "MATCHES PER FILE",
    ReportKind.BY_EXTENSION: "MATCHES BY EXTENSION",
    ReportKind.BY_DIRECTORY: "MATCHES BY DIRECTORY",
    ReportKind.TOP_FILES: "TOP FILES",
    ReportKind.TIMELINE: "MATCHES BY MODIFICATION DATE",
}

_KEY_HEADERS = {
    ReportKind.SUMMARY: "key",
    ReportKind.DETAILED: "file",
    ReportKind.BY_EXTENSION: "extension",
    ReportKind.BY_DIRECTORY: "directory",
    ReportKind.TOP_FILES: "file",
    ReportKind.TIMELINE: "date",
}


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


def _average_text(report: Report) -> str:
    if report.summary.average is None:
        return "no matches"
    return f"{report.summary.average:.2f}"


def report_to_json(report: Report) -> dict[str, Any]:
    """JSON-serializable dict."""
    return {
        "kind": report.kind.value,
        "summary": {
            "total_matches": report.summary.total_matches,
            "files_with_matches": report.summary.files_with_matches,
            "average": report.summary.average,
        },
        "min_matches": report.min_matches,
        "top_n": report.top_n,
        "rows": [
            {"key": row.key, "matches": row.matches, "files": row.files}
            for row in report.rows
        ],
        "samples": [record_to_json(r) for r in report.samples],
    }


def report_to_text(report: Report) -> str:
    summary = report.summary
    lines = [
        HEAVY_BAR,
        _TITLES[report.kind],
        HEAVY_BAR,
        f"Total matches:       {summary.total_matches}",
        f"Files with matches:  {summary.files_with_matches}",
        f"Average per file:    {_average_text(report)}",
    ]
    if report.min_matches:
        lines.append(f"Threshold:           >= {report.min_matches} matches per file")

    if report.kind is not ReportKind.SUMMARY:
        lines.append(LIGHT_BAR)
        if not report.rows:
            lines.append("(no rows)")
        grouped = report.kind in (
            ReportKind.BY_EXTENSION, ReportKind.BY_DIRECTORY, ReportKind.TIMELINE,
        )
        width = max((len(row.key) for row in report.rows), default=0)
        for rank, row in enumerate(report.rows, start=1):
            if report.kind is ReportKind.TOP_FILES:
                lines.append(f"{rank:>3}. {row.key:<{width}}  {row.matches:>6}")
            elif grouped:
                noun = "file" if row.files == 1 else "files"
                lines.append(f"  {row.key:<{width}}  {row.matches:>6}  ({row.files} {noun})")
            else:
                lines.append(f"  {row.key:<{width}}  {row.matches:>6}")

    if report.samples:
        lines.append(LIGHT_BAR)
        lines.append("Samples:")
        for record in report.samples:
            lines.append(f"  {record.file.as_posix()}:{record.line}: {record.text.strip()}")

    return "\n".join(lines)


def report_to_jsonl(report: Report) -> str:
    """Structured record stream: one object per row, then the summary."""
    out = [
        json.dumps({"type": "row", "kind": report.kind.value, "key": row.key,
                    "matches": row.matches, "files": row.files})
        for row in report.rows
    ]
    out.extend(
        json.dumps({"type": "sample", **record_to_json(r)}) for r in report.samples
    )
    summary = report_to_json(report)["summary"]
    out.append(json.dumps({"type": "summary", "kind": report.kind.value, **summary}))
    return "\n".join(out)


def report_to_table(report: Report, delimiter: str = ",") -> str:
    """Delimited table. Summary-only reports become a single metrics row."""
    buf = io.StringIO()
    writer = csv.writer(buf, delimiter=delimiter, lineterminator="\n")
    if report.kind is ReportKind.SUMMARY:
        writer.writerow(["total_matches", "files_with_matches", "average"])
        average = "" if report.summary.average is None else f"{report.summary.average:.2f}"
        writer.writerow([report.summary.total_matches, report.summary.files_with_matches, average])
    else:
        writer.writerow([_KEY_HEADERS[report.kind], "matches", "files"])
        for row in report.rows:
            writer.writerow([row.key, row.matches, row.files])
    return buf.getvalue().rstrip("\n")


def render_report(report: Report, fmt: str = "text") -> str:
    if fmt == "json":
        return report_to_jsonl(report)
    if fmt == "csv":
        return report_to_table(report, ",")
    if fmt == "tsv":
        return report_to_table(report, "\t")
    return report_to_text(report)


# ---------------------------------------------------------------------------
# Matches
# ---------------------------------------------------------------------------


def record_to_json(record: MatchRecord) -> dict[str, Any]:
    return {
        "file": record.file.as_posix(),
        "line": record.line,
        "text": record.text,
        "spans": [list(span) for span in record.spans],
        "before": list(record.before),
        "after": list(record.after),
    }


def _record_lines(record: MatchRecord) -> list[str]:
    """grep-style block: context lines use '-', match lines use ':'."""
    path = record.file.as_posix()
    first_before = record.line - len(record.before)
    lines = [f"{path}-{first_before + i}-{text}" for i, text in enumerate(record.before)]
    match_lines = record.text.split("\n")
    lines.extend(f"{path}:{record.line + i}:{text}" for i, text in enumerate(match_lines))
    last = record.line + len(match_lines)
    lines.extend(f"{path}-{last + i}-{text}" for i, text in enumerate(record.after))
    return lines


def render_matches(records: Iterable[MatchRecord], fmt: str = "text") -> Iterable[str]:
    """
    Lazily render records, one output chunk per record.

    Lazy so the CLI can print as the engine streams. Context blocks are
    separated by "--" like grep.
    """
    context = False
    for i, record in enumerate(records):
        if fmt == "json":
            yield json.dumps({"type": "match", **record_to_json(record)})
        elif fmt in ("csv", "tsv"):
            buf = io.StringIO()
            writer = csv.writer(buf, delimiter="," if fmt == "csv" else "\t", lineterminator="")
            if i == 0:
                writer.writerow(["file", "line", "text"])
                buf.write("\n")
            writer.writerow([record.file.as_posix(), record.line, record.text])
            yield buf.getvalue()
        else:
            has_context = bool(record.before or record.after)
            if i and (context or has_context):
                yield "--"
            context = has_context
            yield "\n".join(_record_lines(record))


# ---------------------------------------------------------------------------
# Replacement
# ---------------------------------------------------------------------------


def render_preview(previews: list[PreviewRecord], fmt: str = "text") -> str:
    if fmt == "json":
        return "\n".join(
            json.dumps({"type": "preview", **record_to_json(p.record),
                        "replaced": p.replaced, "replacements": p.replacements})
            for p in previews
        )
    lines = []
    current = None
    for p in previews:
        if p.record.file != current:
            current = p.record.file
            lines.append(f"## {current.as_posix()}")
        lines.append(f"  L{p.record.line}: - {p.record.text}")
        lines.append(f"  L{p.record.line}: + {p.replaced}")
    files = len({p.record.file for p in previews})
    total = sum(p.replacements for p in previews)
    lines.append(f"Preview: {total} replacements on {len(previews)} lines in {files} files (nothing written)")
    return "\n".join(lines)


def render_apply_result(result: ApplyResult, fmt: str = "text") -> str:
    if fmt == "json":
        return json.dumps({
            "type": "apply",
            "total": result.total,
            "processed": result.processed,
            "replacements": result.replacements,
            "cancelled": result.cancelled,
            "changed": [p.as_posix() for p in result.changed],
            "backups": [p.as_posix() for p in result.backups],
            "failed": [{"file": p.as_posix(), "reason": str(e)} for p, e in result.failed],
        })
    lines = [result.describe()]
    for path in result.changed:
        lines.append(f"  changed  {path.as_posix()}")
    for path, err in result.failed:
        lines.append(f"  FAILED   {path.as_posix()}: {err.cause}")
    return "\n".join(lines)
