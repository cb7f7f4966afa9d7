"""Tests for report, match and replacement rendering."""

import json
from pathlib import Path

from rip_snipe.errors import SnipeIOError
from rip_snipe.formatters import (
    render_apply_result,
    render_matches,
    render_preview,
    render_report,
)
from rip_snipe.models import ApplyResult, FileCount, MatchRecord, PreviewRecord
from rip_snipe.tally import aggregate

COUNTS = [FileCount(Path("src/a.py"), 4), FileCount(Path("src/b.md"), 1)]


class TestReports:
    def test_summary_text(self):
        text = render_report(aggregate(COUNTS, "summary"))
        assert "SEARCH STATISTICS" in text
        assert "Total matches:       5" in text
        assert "Files with matches:  2" in text
        assert "Average per file:    2.50" in text

    def test_empty_summary_says_no_matches(self):
        assert "Average per file:    no matches" in render_report(aggregate([], "summary"))

    def test_threshold_is_shown(self):
        text = render_report(aggregate(COUNTS, "detailed", min_matches=2))
        assert "Threshold:           >= 2 matches per file" in text
        assert "src/a.py" in text
        assert "src/b.md" not in text

    def test_no_rows(self):
        assert "(no rows)" in render_report(aggregate(COUNTS, "top", min_matches=50))

    def test_jsonl_summary_last(self):
        lines = [json.loads(line) for line in render_report(aggregate(COUNTS, "extension"), "json").splitlines()]
        assert [line["type"] for line in lines] == ["row", "row", "summary"]
        assert lines[0] == {"type": "row", "kind": "extension", "key": "py", "matches": 4, "files": 1}
        assert lines[-1]["total_matches"] == 5
        assert lines[-1]["average"] == 2.5

    def test_csv(self):
        assert render_report(aggregate(COUNTS, "detailed"), "csv").splitlines() == [
            "file,matches,files",
            "src/a.py,4,1",
            "src/b.md,1,1",
        ]

    def test_summary_tsv(self):
        assert render_report(aggregate(COUNTS, "summary"), "tsv").splitlines() == [
            "total_matches\tfiles_with_matches\taverage",
            "5\t2\t2.50",
        ]

    def test_samples(self):
        sample = MatchRecord(file=Path("src/a.py"), line=3, text="    # TODO fix  ")
        text = render_report(aggregate(COUNTS, "summary", samples=[sample]))
        assert "Samples:" in text
        assert "src/a.py:3: # TODO fix" in text


class TestMatches:
    def test_text_with_context(self):
        records = [
            MatchRecord(Path("a.py"), 2, "hit", ((0, 3),), before=("one",), after=("three",)),
            MatchRecord(Path("a.py"), 9, "hit again", ((0, 3),)),
        ]
        assert list(render_matches(records)) == [
            "a.py-1-one\na.py:2:hit\na.py-3-three",
            "--",
            "a.py:9:hit again",
        ]

    def test_plain_text_has_no_separators(self):
        records = [MatchRecord(Path("a.py"), 1, "x"), MatchRecord(Path("b.py"), 1, "x")]
        assert list(render_matches(records)) == ["a.py:1:x", "b.py:1:x"]

    def test_multiline_record(self):
        (chunk,) = render_matches([MatchRecord(Path("a.py"), 4, "start\nend")])
        assert chunk == "a.py:4:start\na.py:5:end"

    def test_json(self):
        (chunk,) = render_matches([MatchRecord(Path("a.py"), 1, "x y", ((2, 3),))], "json")
        assert json.loads(chunk) == {
            "type": "match", "file": "a.py", "line": 1, "text": "x y",
            "spans": [[2, 3]], "before": [], "after": [],
        }

    def test_csv_header_once(self):
        records = [MatchRecord(Path("a.py"), 1, "x, y"), MatchRecord(Path("b.py"), 2, "z")]
        assert "\n".join(render_matches(records, "csv")).splitlines() == [
            "file,line,text",
            'a.py,1,"x, y"',
            "b.py,2,z",
        ]

    def test_lazy(self):
        def records():
            yield MatchRecord(Path("a.py"), 1, "x")
            raise AssertionError("consumed too far")

        assert next(iter(render_matches(records()))) == "a.py:1:x"


class TestReplacement:
    def test_preview(self):
        previews = [
            PreviewRecord(MatchRecord(Path("a.py"), 1, "foo_old"), "foo_new", 1),
            PreviewRecord(MatchRecord(Path("a.py"), 4, "bar_old baz_old"), "bar_new baz_new", 2),
            PreviewRecord(MatchRecord(Path("b.py"), 2, "x_old"), "x_new", 1),
        ]
        assert render_preview(previews).splitlines() == [
            "## a.py",
            "  L1: - foo_old",
            "  L1: + foo_new",
            "  L4: - bar_old baz_old",
            "  L4: + bar_new baz_new",
            "## b.py",
            "  L2: - x_old",
            "  L2: + x_new",
            "Preview: 4 replacements on 3 lines in 2 files (nothing written)",
        ]

    def test_apply_result(self):
        error = SnipeIOError(Path("b.py"), PermissionError("denied"))
        result = ApplyResult(total=2, processed=1, replacements=3, changed=[Path("a.py")], failed=[(Path("b.py"), error)])
        assert render_apply_result(result).splitlines() == [
            "1 of 2 files processed, 3 replacements, 1 failed",
            "  changed  a.py",
            "  FAILED   b.py: denied",
        ]
        data = json.loads(render_apply_result(result, "json"))
        assert data["changed"] == ["a.py"]
        assert data["failed"] == [{"file": "b.py", "reason": "b.py: denied"}]
