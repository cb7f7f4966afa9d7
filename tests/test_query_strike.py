"""Tests for QueryExecutor: planning, streaming, filters and cancellation."""

import os
import time
from pathlib import Path

import pytest

from rip_snipe.errors import PathNotFoundError, PatternError
from rip_snipe.models import CaseMode, FileCount, MatchRecord, SearchSpec
from rip_snipe.query_strike import QueryExecutor, inject_dotall, needs_advanced_engine
from rip_snipe.ripgrep import RipgrepEngine
from rip_snipe.spec_forge import build


def spec_of(**raw) -> SearchSpec:
    return build(raw).spec


class TestPlan:
    def test_literal_never_uses_advanced_engine(self, executor):
        query = executor.plan(spec_of(pattern="(?=x)", literal=True))
        assert query.fixed_strings is True
        assert query.pcre2 is False

    def test_lookaround_selects_advanced_engine(self, executor):
        assert executor.plan(spec_of(pattern=r"foo(?!bar)")).pcre2 is True
        assert executor.plan(spec_of(pattern=r"(?<=@)\w+")).pcre2 is True
        assert executor.plan(spec_of(pattern=r"(a)\1")).pcre2 is True
        assert executor.plan(spec_of(pattern=r"foo\d+")).pcre2 is False

    def test_dotall_marker_injected_once(self, executor):
        query = executor.plan(spec_of(pattern="a.b", multiline=True, dotall=True, pcre2=True))
        assert query.pattern == "(?s)a.b"
        assert executor.plan(spec_of(pattern="(?s)a.b", dotall=True, pcre2=True)).pattern == "(?s)a.b"
        assert executor.plan(spec_of(pattern="(?is)a.b", dotall=True, pcre2=True)).pattern == "(?is)a.b"

    def test_default_engine_dotall_is_a_flag(self, executor):
        query = executor.plan(spec_of(pattern="a.b", dotall=True))
        assert query.pattern == "a.b"
        assert query.multiline is True
        assert query.dotall is True
        assert query.pcre2 is False

    def test_plan_is_deterministic(self, executor):
        spec = spec_of(pattern="x", extensions="ts,py,js", globs=["b*", "a*"])
        first = executor.plan(spec)
        assert first == executor.plan(spec)
        assert first.file_types == ("js", "py", "ts")
        assert first.globs == ("a*", "b*")

    def test_smart_case_is_resolved_before_the_engine(self, executor):
        assert executor.plan(spec_of(pattern=r"\Sfoo")).case is CaseMode.SENSITIVE
        assert executor.plan(spec_of(pattern="foo")).case is CaseMode.INSENSITIVE
        assert executor.plan(spec_of(pattern="Foo", ignore_case=True)).case is CaseMode.INSENSITIVE

        cmd = RipgrepEngine(rg_path="rg").build_command(executor.plan(spec_of(pattern=r"\Sfoo")), [])
        assert "--case-sensitive" in cmd
        assert "--smart-case" not in cmd

    def test_line_filters_move_the_per_file_cap_above_the_engine(self, executor):
        assert executor.plan(spec_of(pattern="x", max_count=2)).max_count == 2
        assert executor.plan(spec_of(pattern="x", max_count=2, log_level="error")).max_count is None


def test_helpers():
    assert needs_advanced_engine("(?<!x)y")
    assert not needs_advanced_engine("plain")
    assert inject_dotall("(?i)x") == "(?s)(?i)x"
    assert inject_dotall("(?i)(?s)x") == "(?i)(?s)x"


class TestExecute:
    def test_missing_root_fails_before_any_query(self, tmp_path, fake_engine):
        engine = fake_engine()
        executor = QueryExecutor(engine)
        with pytest.raises(PathNotFoundError) as exc:
            executor.execute(spec_of(pattern="x"), [tmp_path / "nope"])
        assert exc.value.path == tmp_path / "nope"
        assert engine.queries == []

    def test_literal_dot_is_not_a_wildcard(self, executor, write, tmp_path):
        write("a.txt", "aXb\n")
        assert list(executor.execute(spec_of(pattern="a.b", literal=True), [tmp_path])) == []
        records = list(executor.execute(spec_of(pattern="a.b"), [tmp_path]))
        assert len(records) == 1
        assert records[0].matched == ["aXb"]

    def test_emission_order_is_preserved(self, executor, write, tmp_path):
        write("a.txt", "x1\nno\nx2\n")
        write("b.txt", "x3\n")
        records = list(executor.execute(spec_of(pattern="x"), [tmp_path]))
        assert [(r.file.name, r.line) for r in records] == [("a.txt", 1), ("a.txt", 3), ("b.txt", 1)]

    def test_bad_pattern_is_a_pattern_error(self, executor, write, tmp_path):
        write("a.txt", "x\n")
        with pytest.raises(PatternError):
            list(executor.execute(spec_of(pattern="("), [tmp_path]))

    def test_first_match_cancels_the_engine(self, fake_engine, tmp_path):
        records = [MatchRecord(file=Path(f"f{i}"), line=1, text="x") for i in range(3)]
        engine = fake_engine(records=records)
        found = QueryExecutor(engine).first_match(spec_of(pattern="x"), [tmp_path])
        assert found == records[0]
        assert engine.yielded == 1
        assert engine.closed is True

    def test_context_lines(self, executor, write, tmp_path):
        write("a.txt", "one\ntwo\nTHREE\nfour\nfive\n")
        record = next(executor.execute(spec_of(pattern="THREE", context=1), [tmp_path]))
        assert record.before == ("two",)
        assert record.after == ("four",)


class TestFilters:
    LOG = (
        "2024-01-01 INFO request timeout retried\n"
        "2024-01-01 ERROR request timeout\n"
        "2024-01-01 DEBUG timeout config\n"
        "2024-01-01 FATAL timeout, giving up\n"
        "2024-01-01 ERROR disk full\n"
    )

    def test_log_level_requires_both_level_and_pattern(self, executor, write, tmp_path):
        write("app.log", self.LOG)
        spec = spec_of(pattern="timeout", log_level="error")
        records = list(executor.execute(spec, [tmp_path]))
        assert [r.line for r in records] == [2, 4]

    def test_counts_with_line_filters(self, executor, write, tmp_path):
        path = write("app.log", self.LOG)
        counts = executor.execute_counts(spec_of(pattern="timeout", log_level="error"), [tmp_path])
        assert counts == [FileCount(file=path, count=2)]

    def test_per_file_cap_counts_filtered_lines(self, executor, write, tmp_path):
        write("app.log", self.LOG)
        spec = spec_of(pattern="timeout", log_level="error", max_count=1)
        assert [r.line for r in executor.execute(spec, [tmp_path])] == [2]

    def test_changed_within(self, executor, write, tmp_path):
        old = write("old.txt", "hit\n")
        write("new.txt", "hit\n")
        month_ago = time.time() - 30 * 86400
        os.utime(old, (month_ago, month_ago))
        spec = spec_of(pattern="hit", changed_within="7d")
        assert [r.file.name for r in executor.execute(spec, [tmp_path])] == ["new.txt"]
        assert [fc.file.name for fc in executor.execute_counts(spec, [tmp_path])] == ["new.txt"]


def test_todo_scenario(executor, write, tmp_path):
    """Two TODOs in one file, none in the other."""
    from rip_snipe.tally import aggregate

    file_a = write("a.py", "# TODO one\nx = 1  # TODO two\n")
    write("b.py", "print('done')\n")

    counts = executor.execute_counts(spec_of(pattern="TODO", literal=True), [tmp_path])
    assert counts == [FileCount(file=file_a, count=2)]

    summary = aggregate(counts, "summary").summary
    assert summary.total_matches == 2
    assert summary.files_with_matches == 1
    assert summary.average == 2.0


def test_matching_files_is_ordered_and_unique(executor, write, tmp_path):
    write("b.txt", "x x\n")
    write("a.txt", "x\n")
    write("c.txt", "nothing\n")
    files = executor.matching_files(spec_of(pattern="x"), [tmp_path])
    assert [f.name for f in files] == ["a.txt", "b.txt"]
