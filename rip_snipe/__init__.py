"""
rip-snipe - Pattern search, statistics and guarded replacement on top of ripgrep.

Usage:
    from rip_snipe import QueryExecutor, ReplacementWorkflow, aggregate, build

    spec = build({"pattern": "TODO", "literal": True}).spec
    executor = QueryExecutor()                    # rg if installed, else Python
    for record in executor.execute(spec, ["src/"]):
        print(record.file, record.line, record.text)

    report = aggregate(executor.execute_counts(spec, ["src/"]), "extension")
    print(render_report(report))

    flow = ReplacementWorkflow(executor)
    flow.preview(build({"pattern": r"(\\w+)_old", "replacement": "$1_new"}).spec, ["src/"])
    result = flow.apply(flow.plan(backup=True), confirmed=True)

CLI:
    rip-snipe search 'TODO' src/
    rip-snipe stats 'TODO' . --by top --top 5
    rip-snipe replace 'foo' 'bar' src/ -F --apply
"""

from .errors import (
    ConfirmationRequiredError,
    EngineError,
    NoMatchError,
    PathNotFoundError,
    PatternError,
    ReplacementError,
    SnipeError,
    SnipeIOError,
    ValidationError,
    WorkflowStateError,
)
from .formatters import render_apply_result, render_matches, render_preview, render_report
from .models import (
    ApplyResult,
    CaseMode,
    ContextLines,
    FileCount,
    MatchMode,
    MatchRecord,
    PreviewRecord,
    ReplacementPlan,
    Report,
    ReportKind,
    ReportRow,
    SearchSpec,
    SummaryMetrics,
)
from .query_strike import QueryExecutor
from .ripgrep import EngineQuery, PythonEngine, RipgrepEngine, SearchEngine, default_engine
from .spec_forge import BuildResult, build
from .swap_guard import ReplacementWorkflow, WorkflowState
from .tally import aggregate, summarize

__all__ = [
    "ApplyResult",
    "BuildResult",
    "CaseMode",
    "ConfirmationRequiredError",
    "ContextLines",
    "EngineError",
    "EngineQuery",
    "FileCount",
    "MatchMode",
    "MatchRecord",
    "NoMatchError",
    "PathNotFoundError",
    "PatternError",
    "PreviewRecord",
    "PythonEngine",
    "QueryExecutor",
    "ReplacementError",
    "ReplacementPlan",
    "ReplacementWorkflow",
    "Report",
    "ReportKind",
    "ReportRow",
    "RipgrepEngine",
    "SearchEngine",
    "SearchSpec",
    "SnipeError",
    "SnipeIOError",
    "SummaryMetrics",
    "ValidationError",
    "WorkflowState",
    "aggregate",
    "build",
    "default_engine",
    "render_apply_result",
    "render_matches",
    "render_preview",
    "render_report",
    "summarize",
]
