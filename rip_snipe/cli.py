"""
cli.py - Command-line entry point for rip-snipe.

Usage:
    rip-snipe search 'TODO' src/ -F
    rip-snipe context 'def \\w+' src/ -C 3 -t py
    rip-snipe stats 'TODO' . --by extension --min-matches 3
    rip-snipe stats 'timeout' logs/ --level error --by timeline
    rip-snipe replace '(\\w+)_old' '$1_new' src/             # preview only
    rip-snipe replace '(\\w+)_old' '$1_new' src/ --apply     # asks first
    python -m rip_snipe search 'x' --format json

Exit codes: 0 matches, 1 no matches, 2 usage/validation/pattern error,
3 I/O or engine failure, 130 interrupted.

Prompts, warnings and progress go to stderr so stdout stays clean for
--format json piping.
"""

from __future__ import annotations

import argparse
import logging
import sys
from itertools import islice

EXIT_MATCH = 0
EXIT_NO_MATCH = 1
EXIT_FAILURE = 3
EXIT_INTERRUPTED = 130


# ---------------------------------------------------------------------------
# Helpers (all write to stderr)
# ---------------------------------------------------------------------------


def _err(msg: str, end: str = "\n") -> None:
    """Print *msg* to stderr."""
    print(msg, end=end, file=sys.stderr, flush=True)


def _out(text: str) -> None:
    if text:
        print(text, flush=True)


def _configure_logging(verbose: bool, quiet: bool) -> None:
    level = logging.DEBUG if verbose else logging.ERROR if quiet else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _confirm(prompt: str) -> bool:
    """Read y/N from stdin. Anything but an explicit yes is a no."""
    _err(f"{prompt} [y/N] ", end="")
    answer = sys.stdin.readline().strip().lower()
    return answer in ("y", "yes")


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _shared_options() -> argparse.ArgumentParser:
    """Flags every sub-command shares. Each maps onto one SearchSpec field."""
    parent = argparse.ArgumentParser(add_help=False)

    match = parent.add_argument_group("matching")
    match.add_argument("-F", "--literal", action="store_true", help="Treat the pattern as a literal string")
    match.add_argument("-i", "--ignore-case", action="store_true", help="Case-insensitive")
    match.add_argument("-s", "--case-sensitive", action="store_true", help="Case-sensitive")
    match.add_argument("-S", "--smart-case", action="store_true", help="Sensitive only if the pattern has uppercase (default)")
    match.add_argument("-w", "--word", action="store_true", help="Whole-word matches only")
    match.add_argument("-U", "--multiline", action="store_true", help="Allow matches to span lines")
    match.add_argument("--dotall", action="store_true", help="'.' matches newlines (implies -U)")
    match.add_argument("-P", "--pcre2", action="store_true", help="Advanced engine: lookaround, backreferences")
    match.add_argument(
        "--policy",
        choices=("literal-wins", "regex-wins"),
        default="literal-wins",
        help="Which side wins when -F is combined with -U/--dotall/-P (default: literal-wins)",
    )

    scope = parent.add_argument_group("scope")
    scope.add_argument("-t", "--type", dest="types", action="append", metavar="TYPE", help="File type (py, js, markdown, ...)")
    scope.add_argument("-e", "--ext", dest="extensions", action="append", metavar="EXTS", help="Comma-separated extensions (py,md,yml)")
    scope.add_argument("-g", "--glob", dest="globs", action="append", metavar="GLOB", help="Include files matching GLOB")
    scope.add_argument("-x", "--exclude", dest="excludes", action="append", metavar="GLOB", help="Exclude files matching GLOB")
    scope.add_argument("--max-depth", type=int, metavar="N", help="Descend at most N directories")
    scope.add_argument("--hidden", action="store_true", help="Search hidden files and directories")
    scope.add_argument("--no-ignore", action="store_true", help="Don't respect ignore files")
    scope.add_argument("-m", "--max-count", type=int, metavar="N", help="At most N matching lines per file")
    scope.add_argument("--level", dest="log_level", metavar="LEVEL", help="Only lines at LEVEL or above (debug, info, warn, error, fatal)")
    scope.add_argument("--max-filesize", metavar="SIZE", help="Skip files larger than SIZE (512, 10K, 2M)")
    scope.add_argument("--changed-within", metavar="AGE", help="Only files modified within AGE (30m, 12h, 7d, 2w)")

    out = parent.add_argument_group("output")
    out.add_argument("--format", choices=("text", "json", "csv", "tsv"), default="text", help="Output format")
    out.add_argument("--engine", choices=("auto", "rg", "python"), default="auto", help="Search engine (default: rg if installed)")
    out.add_argument("-v", "--verbose", action="store_true", help="Debug logging on stderr")
    out.add_argument("-q", "--quiet", action="store_true", help="Errors only on stderr")
    return parent


def _context_options(parser: argparse.ArgumentParser, default: int) -> None:
    parser.add_argument("-C", "--context", type=int, default=default, metavar="N", help=f"Lines of context (default: {default})")
    parser.add_argument("-B", "--before", type=int, metavar="N", help="Lines before each match")
    parser.add_argument("-A", "--after", type=int, metavar="N", help="Lines after each match")


def build_parser() -> argparse.ArgumentParser:
    parent = _shared_options()
    parser = argparse.ArgumentParser(
        prog="rip-snipe",
        description="rip-snipe: pattern search, statistics and guarded replacement on top of ripgrep.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")

    search = sub.add_parser("search", parents=[parent], help="List matches")
    search.add_argument("pattern")
    search.add_argument("paths", nargs="*", metavar="PATH")
    search.add_argument("--first", action="store_true", help="Stop after the first match")
    _context_options(search, default=0)

    context = sub.add_parser("context", parents=[parent], help="List matches with surrounding lines")
    context.add_argument("pattern")
    context.add_argument("paths", nargs="*", metavar="PATH")
    _context_options(context, default=2)

    stats = sub.add_parser("stats", parents=[parent], help="Match statistics")
    stats.add_argument("pattern")
    stats.add_argument("paths", nargs="*", metavar="PATH")
    stats.add_argument(
        "--by",
        choices=("summary", "detailed", "extension", "directory", "top", "timeline"),
        default="summary",
        help="Grouping (default: summary)",
    )
    stats.add_argument("--top", type=int, default=10, metavar="N", help="Rows for --by top (default: 10)")
    stats.add_argument("--min-matches", type=int, default=0, metavar="N", help="Hide files with fewer matches from rows")
    stats.add_argument("--samples", type=int, default=0, metavar="N", help="Include the first N matches as samples")

    replace = sub.add_parser("replace", parents=[parent], help="Preview or apply a replacement")
    replace.add_argument("pattern")
    replace.add_argument("replacement", help="Replacement text ($1, ${name}, $0; literal with -F)")
    replace.add_argument("paths", nargs="*", metavar="PATH")
    replace.add_argument("--apply", action="store_true", help="Write changes (default is preview only)")
    replace.add_argument("-y", "--yes", action="store_true", help="Don't ask before writing")
    replace.add_argument("--no-backup", action="store_true", help="Skip .rip-snipe.bak backups")

    return parser


def _raw_options(args: argparse.Namespace) -> dict:
    """Namespace -> raw option mapping for spec_forge.build()."""
    raw = {
        key: getattr(args, key, None)
        for key in (
            "pattern", "replacement", "literal", "ignore_case", "case_sensitive",
            "smart_case", "word", "multiline", "dotall", "pcre2", "types",
            "extensions", "globs", "excludes", "context", "before", "after",
            "max_depth", "hidden", "no_ignore", "max_count", "log_level",
            "max_filesize", "changed_within",
        )
    }
    return raw


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _cmd_search(args, spec, executor) -> int:
    from rip_snipe.formatters import render_matches

    if getattr(args, "first", False):
        record = executor.first_match(spec, args.paths)
        records = [record] if record else []
    else:
        records = executor.execute(spec, args.paths)

    found = 0
    for chunk in render_matches(records, args.format):
        _out(chunk)
        found += 1
    return EXIT_MATCH if found else EXIT_NO_MATCH


def _cmd_stats(args, spec, executor) -> int:
    from rip_snipe.formatters import render_report
    from rip_snipe.tally import aggregate

    counts = executor.execute_counts(spec, args.paths)
    samples = []
    if args.samples > 0 and counts:
        records = executor.execute(spec, args.paths)
        try:
            samples = list(islice(records, args.samples))
        finally:
            records.close()

    report = aggregate(
        counts,
        args.by,
        min_matches=args.min_matches,
        top_n=args.top,
        samples=samples,
    )
    _out(render_report(report, args.format))
    return EXIT_MATCH if report.summary.has_matches else EXIT_NO_MATCH


def _cmd_replace(args, spec, executor) -> int:
    from rip_snipe.errors import NoMatchError
    from rip_snipe.formatters import render_apply_result, render_preview
    from rip_snipe.swap_guard import ReplacementWorkflow

    flow = ReplacementWorkflow(executor)
    previews = flow.preview(spec, args.paths)
    if not previews:
        flow.cancel()
        if not args.quiet:
            _err(f"No matches for {spec.pattern!r}")
        return EXIT_NO_MATCH

    _out(render_preview(previews, args.format))

    if not args.apply:
        flow.cancel()
        return EXIT_MATCH

    try:
        plan = flow.plan(backup=not args.no_backup)
    except NoMatchError:
        flow.cancel()
        return EXIT_NO_MATCH

    confirmed = args.yes or _confirm(f"Apply replacements to {len(plan.target_files)} file(s)?")
    if not confirmed:
        flow.cancel()
        _err("Cancelled; no files were changed.")
        return EXIT_MATCH

    result = flow.apply(plan, confirmed=True)
    _out(render_apply_result(result, args.format))
    if result.cancelled or result.failed:
        return EXIT_FAILURE
    return EXIT_MATCH


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> int:
    """
    Parse CLI arguments and run one sub-command.

    Args:
        argv: Argument list (defaults to sys.argv[1:]).

    Returns:
        Process exit code.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose, args.quiet)

    from rip_snipe.errors import SnipeError
    from rip_snipe.query_strike import QueryExecutor
    from rip_snipe.ripgrep import default_engine
    from rip_snipe.spec_forge import build

    handlers = {
        "search": _cmd_search,
        "context": _cmd_search,
        "stats": _cmd_stats,
        "replace": _cmd_replace,
    }

    try:
        built = build(
            _raw_options(args),
            for_replace=args.command == "replace",
            literal_wins=args.policy == "literal-wins",
        )
        executor = QueryExecutor(default_engine(args.engine))
        return handlers[args.command](args, built.spec, executor)
    except SnipeError as exc:
        _err(f"rip-snipe: error: {exc.message}")
        return exc.exit_code
    except KeyboardInterrupt:
        _err("\nrip-snipe: interrupted by user")
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
