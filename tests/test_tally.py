"""Tests for aggregate(): summaries, thresholds, groupings and ordering."""

import logging
from datetime import date
from pathlib import Path

import pytest

from rip_snipe.models import FileCount, ReportKind
from rip_snipe.tally import NO_EXTENSION, UNKNOWN_DAY, aggregate, extension_of, summarize


def fc(path: str, count: int) -> FileCount:
    return FileCount(file=Path(path), count=count)


COUNTS = [
    fc("src/a.py", 5),
    fc("src/b.py", 1),
    fc("docs/readme.md", 3),
    fc("Makefile", 2),
    fc("src/util/c.py", 3),
]


@pytest.mark.parametrize(
    "name, expected",
    [
        ("a.py", "py"),
        ("archive.tar.gz", "gz"),
        ("Makefile", NO_EXTENSION),
        ("file.", NO_EXTENSION),
        (".bashrc", "bashrc"),
        ("dir.d/script", NO_EXTENSION),
    ],
)
def test_extension_of(name, expected):
    assert extension_of(name) == expected


class TestSummary:
    def test_totals(self):
        summary = summarize(COUNTS)
        assert summary.total_matches == 14
        assert summary.files_with_matches == 5
        assert summary.average == pytest.approx(2.8)

    def test_empty_has_no_average(self):
        report = aggregate([], "summary")
        assert report.summary.total_matches == 0
        assert report.summary.files_with_matches == 0
        assert report.summary.average is None
        assert not report.summary.has_matches
        assert report.rows == ()

    def test_zero_counts_are_ignored(self):
        report = aggregate([fc("a.py", 0), fc("b.py", 2)], "detailed")
        assert report.summary.files_with_matches == 1
        assert [r.key for r in report.rows] == ["b.py"]


class TestThreshold:
    def test_rows_drop_small_files_but_summary_keeps_them(self):
        report = aggregate(COUNTS, "detailed", min_matches=3)
        assert [r.key for r in report.rows] == ["docs/readme.md", "src/a.py", "src/util/c.py"]
        assert report.summary.total_matches == 14
        assert report.summary.files_with_matches == 5
        assert report.min_matches == 3

    def test_threshold_above_everything(self):
        report = aggregate(COUNTS, "extension", min_matches=100)
        assert report.rows == ()
        assert report.summary.has_matches


class TestGroupings:
    def test_detailed_sorted_by_path(self):
        report = aggregate(COUNTS, ReportKind.DETAILED)
        assert [r.key for r in report.rows] == [
            "Makefile", "docs/readme.md", "src/a.py", "src/b.py", "src/util/c.py",
        ]

    def test_top_files_ties_broken_by_path(self):
        report = aggregate(COUNTS, "top", top_n=3)
        assert [(r.key, r.matches) for r in report.rows] == [
            ("src/a.py", 5),
            ("docs/readme.md", 3),
            ("src/util/c.py", 3),
        ]
        assert report.top_n == 3

    def test_top_n_only_reported_for_top(self):
        assert aggregate(COUNTS, "detailed").top_n is None

    def test_by_extension(self):
        report = aggregate(COUNTS, "extension")
        assert [(r.key, r.matches, r.files) for r in report.rows] == [
            ("py", 9, 3),
            ("md", 3, 1),
            (NO_EXTENSION, 2, 1),
        ]

    def test_by_directory(self):
        report = aggregate(COUNTS, "directory")
        assert [(r.key, r.matches, r.files) for r in report.rows] == [
            ("src", 6, 2),
            ("docs", 3, 1),
            ("src/util", 3, 1),
            (".", 2, 1),
        ]

    def test_timeline(self):
        days = {
            Path("src/a.py"): date(2024, 3, 2),
            Path("src/b.py"): date(2024, 3, 1),
            Path("docs/readme.md"): date(2024, 3, 2),
            Path("Makefile"): date(2024, 2, 28),
            Path("src/util/c.py"): date(2024, 3, 1),
        }
        report = aggregate(COUNTS, "timeline", mtime_of=days.__getitem__)
        assert [(r.key, r.matches, r.files) for r in report.rows] == [
            ("2024-02-28", 2, 1),
            ("2024-03-01", 4, 2),
            ("2024-03-02", 8, 2),
        ]

    def test_timeline_reads_mtimes(self, write):
        path = write("a.log", "x\n")
        report = aggregate([FileCount(file=path, count=1)], "timeline")
        assert len(report.rows) == 1
        assert date.fromisoformat(report.rows[0].key) <= date.today()

    def test_timeline_survives_a_vanished_file(self, write, tmp_path, caplog):
        kept = write("a.log", "x\n")
        gone = tmp_path / "rotated.log"
        counts = [FileCount(file=kept, count=2), FileCount(file=gone, count=3)]
        with caplog.at_level(logging.WARNING, logger="rip_snipe.tally"):
            report = aggregate(counts, "timeline")

        assert [(r.key, r.matches) for r in report.rows][-1] == (UNKNOWN_DAY, 3)
        assert len(report.rows) == 2
        assert report.summary.total_matches == 5
        assert "rotated.log" in caplog.text

    def test_unknown_grouping(self):
        with pytest.raises(ValueError):
            aggregate(COUNTS, "by-colour")


def test_row_order_does_not_depend_on_input_order():
    for kind in ("detailed", "top", "extension", "directory"):
        forward = aggregate(COUNTS, kind)
        backward = aggregate(list(reversed(COUNTS)), kind)
        assert forward.rows == backward.rows
        assert forward.summary == backward.summary


def test_report_to_dict():
    data = aggregate(COUNTS, "top", top_n=1).to_dict()
    assert data["kind"] == "top"
    assert data["summary"] == {"total_matches": 14, "files_with_matches": 5, "average": 2.8}
    assert data["rows"] == [{"key": "src/a.py", "matches": 5, "files": 1}]
