"""Shared fixtures: a Python-engine executor, a file writer, and a scripted fake engine."""

from pathlib import Path

import pytest

from rip_snipe.query_strike import QueryExecutor
from rip_snipe.ripgrep import PythonEngine


class FakeEngine:
    """Scripted engine. Records every query and whether the stream was closed."""

    name = "fake"

    def __init__(self, records=(), counts=()):
        self.records = list(records)
        self.counts = list(counts)
        self.queries = []
        self.yielded = 0
        self.closed = False

    def search(self, query, roots):
        self.queries.append(query)
        try:
            for record in self.records:
                self.yielded += 1
                yield record
        finally:
            self.closed = True

    def count_per_file(self, query, roots):
        self.queries.append(query)
        return iter(self.counts)


@pytest.fixture
def executor() -> QueryExecutor:
    return QueryExecutor(PythonEngine())


@pytest.fixture
def write(tmp_path: Path):
    """write("sub/a.py", "text") -> Path under tmp_path."""

    def _write(rel: str, text: str) -> Path:
        path = tmp_path / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        return path

    return _write


@pytest.fixture
def fake_engine():
    """The FakeEngine class, for tests that script their own records."""
    return FakeEngine
