"""
swap_guard.py - Guarded find-and-replace. Preview, confirm, back up, then write.

State machine:

    IDLE --preview()--> PREVIEWED --apply(confirmed=True)--> APPLIED
                             |
                             +--cancel() / interrupted apply--> CANCELLED

Guarantees:
    - preview() never writes anything
    - apply() rewrites only the lines preview() showed (level filters and
      per-file caps included)
    - apply() refuses to run without confirmed=True
    - bad $N references fail before the first file is opened
    - with backup on, <file>.rip-snipe.bak exists (byte-identical) before the
      file is rewritten; an existing backup is a per-file error, never overwritten
    - each file is rewritten via temp file + os.replace, so it's old or new, never half
    - one file failing doesn't stop the others; failures land in ApplyResult.failed
    - cancelling mid-run stops between files; files already rewritten stay rewritten

Running two workflows over overlapping files at once is not supported; the
caller owns that.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
import threading
from bisect import bisect_right
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Iterable

from .errors import (
    ConfirmationRequiredError,
    NoMatchError,
    ReplacementError,
    SnipeIOError,
    WorkflowStateError,
)
from .models import ApplyResult, PreviewRecord, ReplacementPlan, SearchSpec
from .query_strike import QueryExecutor
from .ripgrep import PythonEngine, RipgrepEngine, python_pattern

logger = logging.getLogger(__name__)

BACKUP_SUFFIX = ".rip-snipe.bak"

# $$ | ${name} | $123
_REFERENCE = re.compile(r"\$(?:(\$)|\{([A-Za-z_][A-Za-z0-9_]*|\d+)\}|(\d+))")


class WorkflowState(str, Enum):
    IDLE = "idle"
    PREVIEWED = "previewed"
    APPLIED = "applied"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class CompiledReplacement:
    """Matching regex plus a Python re template, validated against each other."""

    regex: re.Pattern
    template: str
    multiline: bool


def _escape_template(text: str) -> str:
    """Make text safe as an re.sub template: backslashes are the only specials."""
    return text.replace("\\", "\\\\")


def translate_replacement(replacement: str, regex: re.Pattern) -> str:
    """
    Translate $-style references into an re.sub template.

    $0 is the whole match, $1..$N numbered groups, ${N} / ${name} the braced
    forms, $$ a literal dollar. Any other text is copied verbatim.

    Raises:
        ReplacementError: reference to a group the pattern doesn't define.
    """
    out = []
    pos = 0
    for m in _REFERENCE.finditer(replacement):
        out.append(_escape_template(replacement[pos:m.start()]))
        pos = m.end()
        dollar, braced, number = m.groups()
        if dollar:
            out.append("$")
            continue
        ref = braced if braced is not None else number
        if ref.isdigit():
            index = int(ref)
            if index > regex.groups:
                raise ReplacementError(
                    index,
                    f"Replacement references group ${index} but the pattern "
                    f"has {regex.groups} group(s)",
                )
            out.append(f"\\g<{index}>")
        else:
            if ref not in regex.groupindex:
                raise ReplacementError(ref, f"Replacement references unknown group ${{{ref}}}")
            out.append(f"\\g<{ref}>")
    out.append(_escape_template(replacement[pos:]))
    return "".join(out)


def compile_replacement(spec: SearchSpec, executor: QueryExecutor | None = None) -> CompiledReplacement:
    """
    Compile the matching regex exactly as a search would run it, then the template.

    Literal mode: the pattern is escaped by the engine plan (fixed strings) and
    the replacement is used verbatim, with no $ expansion.

    When rg picks the lines, its regex syntax is rewritten for Python re first;
    syntax with no same-meaning Python form is a PatternError.
    """
    if spec.replacement is None:
        raise ReplacementError("", "No replacement text given")
    executor = executor or QueryExecutor(PythonEngine())
    query = executor.plan(spec)
    if not query.fixed_strings and isinstance(executor.engine, RipgrepEngine):
        query = replace(query, pattern=python_pattern(query.pattern))
    regex = PythonEngine().compile(query)
    if spec.is_literal:
        template = _escape_template(spec.replacement)
    else:
        template = translate_replacement(spec.replacement, regex)
    return CompiledReplacement(regex=regex, template=template, multiline=query.multiline)


def substitute(
    text: str,
    compiled: CompiledReplacement,
    lines: frozenset[int] | None = None,
) -> tuple[str, int]:
    """
    Apply a compiled replacement to text. Returns (new_text, replacement_count).

    Without multiline, each line is substituted on its own so a match never
    crosses a line break; line endings (\\n, \\r\\n) come through untouched.

    lines, when given, holds 1-based line numbers: only matches starting on
    one of them are replaced, everything else is left as it was.
    """
    if compiled.multiline:
        if lines is None:
            return compiled.regex.subn(compiled.template, text)
        starts = [0] + [m.end() for m in re.finditer("\n", text)]
        count = 0

        def pick(m: re.Match) -> str:
            nonlocal count
            if bisect_right(starts, m.start()) not in lines:
                return m.group(0)
            count += 1
            return m.expand(compiled.template)

        return compiled.regex.sub(pick, text), count

    total = 0
    out = []
    for number, piece in enumerate(text.split("\n"), start=1):
        if lines is not None and number not in lines:
            out.append(piece)
            continue
        body, cr = (piece[:-1], "\r") if piece.endswith("\r") else (piece, "")
        new, count = compiled.regex.subn(compiled.template, body)
        out.append(new + cr)
        total += count
    return "\n".join(out), total


def backup_path_for(path: Path, suffix: str = BACKUP_SUFFIX) -> Path:
    """Sibling of the original with a fixed suffix appended."""
    return path.with_name(path.name + suffix)


def _atomic_write(path: Path, data: bytes) -> None:
    """Write data next to path, then swap it in. Raises OSError."""
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        shutil.copymode(path, tmp)
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


class ReplacementWorkflow:
    """
    One guarded replacement run.

        flow = ReplacementWorkflow(QueryExecutor())
        for p in flow.preview(spec, ["src/"]):
            print(p.record.file, p.replaced)
        plan = flow.plan(backup=True)
        result = flow.apply(plan, confirmed=True)
        print(result.describe())
    """

    def __init__(self, executor: QueryExecutor | None = None, *, backup_suffix: str = BACKUP_SUFFIX):
        self.executor = executor or QueryExecutor()
        self.backup_suffix = backup_suffix
        self.state = WorkflowState.IDLE
        self._spec: SearchSpec | None = None
        self._files: list[Path] = []
        self._lines: dict[Path, frozenset[int]] = {}
        self._consumed = False

    def _require(self, *states: WorkflowState) -> None:
        if self.state not in states:
            allowed = " or ".join(s.value for s in states)
            raise WorkflowStateError(
                f"Replacement workflow is {self.state.value}; this step needs {allowed}"
            )

    # ------------------------------------------------------------------
    # Preview
    # ------------------------------------------------------------------

    def preview(self, spec: SearchSpec, roots: Iterable[Path | str] | None = None) -> list[PreviewRecord]:
        """
        Every match with its line rendered after substitution. Never writes.

        Replacement references are validated before the search runs.
        """
        self._require(WorkflowState.IDLE, WorkflowState.PREVIEWED)
        compiled = compile_replacement(spec, self.executor)

        previews = []
        files: dict[Path, set[int]] = {}
        for record in self.executor.execute(spec, roots):
            replaced, count = substitute(record.text, compiled)
            previews.append(PreviewRecord(record=record, replaced=replaced, replacements=count))
            last = record.line + record.text.count("\n")
            files.setdefault(record.file, set()).update(range(record.line, last + 1))

        self._spec = spec
        self._files = list(files)
        self._lines = {path: frozenset(lines) for path, lines in files.items()}
        self.state = WorkflowState.PREVIEWED
        logger.info(f"Preview: {len(previews)} matches in {len(self._files)} files")
        return previews

    def plan(self, backup: bool = True) -> ReplacementPlan:
        """Freeze the previewed file list into a plan. NoMatchError if it's empty."""
        self._require(WorkflowState.PREVIEWED)
        if not self._files:
            raise NoMatchError(f"Pattern not found: {self._spec.pattern!r}")
        return ReplacementPlan(
            spec=self._spec,
            target_files=tuple(self._files),
            backup=backup,
            lines=dict(self._lines),
        )

    def cancel(self) -> None:
        self._require(WorkflowState.IDLE, WorkflowState.PREVIEWED)
        self.state = WorkflowState.CANCELLED

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def _apply_file(
        self,
        path: Path,
        compiled: CompiledReplacement,
        backup: bool,
        lines: frozenset[int] | None = None,
    ) -> tuple[int, Path | None]:
        """Rewrite one file (only on lines, if given). Returns (replacements, backup). Raises SnipeIOError."""
        try:
            original = path.read_bytes()
        except OSError as e:
            raise SnipeIOError(path, e) from e

        # surrogateescape keeps undecodable bytes byte-identical on the way back out
        text = original.decode("utf-8", errors="surrogateescape")
        new_text, count = substitute(text, compiled, lines)
        if count == 0 or new_text == text:
            return 0, None

        backup_path = None
        if backup:
            backup_path = backup_path_for(path, self.backup_suffix)
            if backup_path.exists():
                raise SnipeIOError(path, f"backup already exists: {backup_path}")
            try:
                shutil.copy2(path, backup_path)
            except OSError as e:
                # No partial backup left behind
                backup_path.unlink(missing_ok=True)
                raise SnipeIOError(path, f"backup failed: {e}") from e

        try:
            _atomic_write(path, new_text.encode("utf-8", errors="surrogateescape"))
        except OSError as e:
            if backup_path is not None:
                backup_path.unlink(missing_ok=True)
            raise SnipeIOError(path, e) from e
        except KeyboardInterrupt:
            # File is untouched, so its backup goes too
            if backup_path is not None:
                backup_path.unlink(missing_ok=True)
            raise
        return count, backup_path

    def apply(
        self,
        plan: ReplacementPlan,
        *,
        confirmed: bool = False,
        cancel_event: threading.Event | None = None,
    ) -> ApplyResult:
        """
        Rewrite every file in the plan, in plan order.

        Args:
            plan:         From plan(). Consumed; a second apply is refused.
            confirmed:    Must be True. Anything else and no file is touched.
            cancel_event: Checked between files; when set, the run stops and
                          the result reports how far it got.

        Raises:
            ConfirmationRequiredError: confirmed is not True.
            WorkflowStateError:        not previewed, or plan already applied.
            ReplacementError:          bad $N reference (before any file is read).
        """
        if confirmed is not True:
            raise ConfirmationRequiredError(
                f"Refusing to modify {len(plan.target_files)} file(s) without confirmation"
            )
        self._require(WorkflowState.PREVIEWED)
        if self._consumed:
            raise WorkflowStateError("This replacement plan has already been applied")

        compiled = compile_replacement(plan.spec, self.executor)
        self._consumed = True
        result = ApplyResult(total=len(plan.target_files))

        try:
            for path in plan.target_files:
                if cancel_event is not None and cancel_event.is_set():
                    result.cancelled = True
                    break
                try:
                    count, backup_path = self._apply_file(
                        Path(path), compiled, plan.backup, plan.lines.get(Path(path))
                    )
                except SnipeIOError as e:
                    logger.warning(f"Replace failed: {e}")
                    result.failed.append((Path(path), e))
                    continue
                result.processed += 1
                result.replacements += count
                if count:
                    result.changed.append(Path(path))
                if backup_path is not None:
                    result.backups.append(backup_path)
        except KeyboardInterrupt:
            result.cancelled = True

        self.state = WorkflowState.CANCELLED if result.cancelled else WorkflowState.APPLIED
        logger.info(f"Apply: {result.describe()}")
        return result
