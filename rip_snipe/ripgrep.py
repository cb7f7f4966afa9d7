"""
ripgrep.py - The engine. rg subprocess wrapper plus a pure-Python fallback.

Both engines speak the same capability: given an EngineQuery and root paths,
stream MatchRecords (search) or FileCounts (count_per_file). Nothing above
this module knows whether rg is installed.

RipgrepEngine streams `rg --json` line by line, so a caller that stops early
kills the process instead of waiting for the whole tree to be scanned.
PythonEngine walks the tree with os.walk + re when rg is missing (and in tests).
"""

import base64
import fnmatch
import json
import logging
import os
import re
import shutil
import subprocess
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Iterable, Iterator, Protocol

from .errors import EngineError, PatternError
from .models import CaseMode, FileCount, MatchRecord

logger = logging.getLogger(__name__)

# Directories to skip when ignore files are respected
IGNORE_DIRS = [
    ".git", "__pycache__", ".pytest_cache", ".mypy_cache",
    "node_modules", ".venv", "venv", "env",
    "dist", "build", ".next", ".nuxt", ".svelte-kit", "target",
    ".idea", ".vscode", "coverage",
    "vendor", ".env",
]

# File type name -> globs. Names follow rg's built-in type names; the globs are
# re-declared with --type-add so both engines agree on what a type covers.
TYPE_GLOBS: dict[str, tuple[str, ...]] = {
    "py": ("*.py", "*.pyi"),
    "js": ("*.js", "*.jsx", "*.mjs", "*.cjs"),
    "ts": ("*.ts", "*.tsx", "*.mts", "*.cts"),
    "svelte": ("*.svelte",),
    "vue": ("*.vue",),
    "rust": ("*.rs",),
    "go": ("*.go",),
    "ruby": ("*.rb",),
    "java": ("*.java",),
    "kotlin": ("*.kt", "*.kts"),
    "swift": ("*.swift",),
    "c": ("*.c", "*.h"),
    "cpp": ("*.cpp", "*.cc", "*.cxx", "*.hpp", "*.hh", "*.hxx"),
    "cs": ("*.cs",),
    "php": ("*.php",),
    "sh": ("*.sh", "*.bash", "*.zsh"),
    "yaml": ("*.yaml", "*.yml"),
    "json": ("*.json",),
    "toml": ("*.toml",),
    "markdown": ("*.md", "*.markdown"),
    "html": ("*.html", "*.htm"),
    "css": ("*.css", "*.scss"),
    "sql": ("*.sql",),
    "xml": ("*.xml",),
    "txt": ("*.txt",),
    "log": ("*.log",),
    "csv": ("*.csv",),
}

# Bare extension -> type name, derived from TYPE_GLOBS ("yml" -> "yaml")
EXTENSION_TYPES: dict[str, str] = {
    glob[2:]: name
    for name, globs in TYPE_GLOBS.items()
    for glob in globs
    if glob.startswith("*.")
}

# Check if rg is available (cached at import time)
RG_PATH = shutil.which("rg")

RG_TIMEOUT = 300  # seconds to wait for rg to exit once its output is drained

# Fragments of rg's stderr that mean "your pattern is broken", not "rg is broken"
_PATTERN_DIAGNOSTICS = (
    "regex parse error",
    "error parsing regex",
    "pcre2",
    "look-around",
    "backreferences",
    "regex could not be compiled",
)

# Bytes read to sniff for binary content
_BINARY_SNIFF = 8192


@dataclass(frozen=True)
class EngineQuery:
    """Engine-level invocation. Built by QueryExecutor.plan(), never by hand."""

    pattern: str
    fixed_strings: bool = False
    case: CaseMode = CaseMode.SMART
    word: bool = False
    multiline: bool = False
    dotall: bool = False
    pcre2: bool = False
    file_types: tuple[str, ...] = ()
    globs: tuple[str, ...] = ()
    excludes: tuple[str, ...] = ()
    before: int = 0
    after: int = 0
    max_depth: int | None = None
    hidden: bool = False
    no_ignore: bool = False
    max_count: int | None = None
    max_filesize: int | None = None

    @property
    def case_sensitive(self) -> bool:
        if self.case is CaseMode.SENSITIVE:
            return True
        if self.case is CaseMode.INSENSITIVE:
            return False
        return any(ch.isupper() for ch in self.pattern)


class SearchEngine(Protocol):
    """The external search capability. Everything else treats it as a black box."""

    name: str

    def search(self, query: EngineQuery, roots: list[Path]) -> Iterator[MatchRecord]:
        ...

    def count_per_file(self, query: EngineQuery, roots: list[Path]) -> Iterator[FileCount]:
        ...


# ---------------------------------------------------------------------------
# rg
# ---------------------------------------------------------------------------


def _json_text(value: dict) -> str:
    """rg encodes non-UTF-8 data as {"bytes": base64} instead of {"text": ...}."""
    if "text" in value:
        return value["text"]
    raw = base64.b64decode(value.get("bytes", ""))
    return raw.decode("utf-8", errors="replace")


def _json_path(value: dict) -> Path:
    if "text" in value:
        return Path(value["text"])
    return Path(os.fsdecode(base64.b64decode(value.get("bytes", ""))))


def _char_offset(raw: bytes, byte_offset: int) -> int:
    """rg reports byte offsets; MatchRecord spans are character offsets."""
    return len(raw[:byte_offset].decode("utf-8", errors="replace"))


def _match_from_event(data: dict) -> MatchRecord:
    text = _json_text(data["lines"])
    raw = text.encode("utf-8")
    spans = tuple(
        (_char_offset(raw, sub["start"]), _char_offset(raw, sub["end"]))
        for sub in data.get("submatches", [])
    )
    return MatchRecord(
        file=_json_path(data["path"]),
        line=int(data["line_number"]),
        text=text.rstrip("\r\n"),
        spans=spans,
    )


def parse_json_stream(
    lines: Iterable[str],
    before: int = 0,
    after: int = 0,
) -> Iterator[MatchRecord]:
    """
    Turn `rg --json` output into MatchRecords, in emission order.

    rg emits context lines as separate events. A context line is attached to
    the pending match as trailing context when it falls within `after` lines
    of it, and is remembered as leading context for the next match.
    """
    pending: MatchRecord | None = None
    trailing: list[str] = []
    recent: list[tuple[int, str]] = []

    def flush() -> MatchRecord:
        return replace(pending, after=tuple(trailing))

    for raw in lines:
        raw = raw.strip()
        if not raw:
            continue
        try:
            event = json.loads(raw)
        except ValueError:
            logger.debug(f"Skipping non-JSON rg line: {raw[:80]}")
            continue

        kind = event.get("type")
        data = event.get("data", {})

        if kind == "match":
            if pending is not None:
                yield flush()
            record = _match_from_event(data)
            lead = tuple(
                text for number, text in recent
                if record.line - before <= number < record.line
            )
            pending = replace(record, before=lead)
            trailing = []
            recent = []
        elif kind == "context":
            number = int(data["line_number"])
            text = _json_text(data["lines"]).rstrip("\r\n")
            if pending is not None:
                last_line = pending.line + pending.text.count("\n")
                if number <= last_line + after:
                    trailing.append(text)
            if before:
                recent.append((number, text))
                recent = recent[-before:]
        elif kind in ("begin", "end"):
            if pending is not None:
                yield flush()
                pending = None
            trailing = []
            recent = []

    if pending is not None:
        yield flush()


def parse_count_lines(lines: Iterable[str]) -> Iterator[FileCount]:
    """Parse `rg --count-matches --with-filename` output: one `path:count` per line."""
    for raw in lines:
        raw = raw.rstrip("\r\n")
        if not raw:
            continue
        path, sep, count = raw.rpartition(":")
        if not sep:
            logger.debug(f"Skipping malformed rg count line: {raw[:80]}")
            continue
        try:
            yield FileCount(file=Path(path), count=int(count))
        except ValueError:
            logger.debug(f"Skipping malformed rg count line: {raw[:80]}")


def check_exit(returncode: int, stderr: str) -> None:
    """
    Map rg's exit status onto our error taxonomy.

    0 = matches, 1 = no matches, 2 = error. A pattern diagnostic becomes
    PatternError; anything else with a diagnostic becomes EngineError.
    """
    if returncode in (0, 1):
        return
    message = stderr.strip()
    lowered = message.lower()
    if any(marker in lowered for marker in _PATTERN_DIAGNOSTICS):
        raise PatternError(message)
    if message:
        raise EngineError(f"ripgrep exited {returncode}: {message}")
    logger.warning(f"ripgrep exited {returncode} without a diagnostic")


def python_pattern(pattern: str) -> str:
    """
    Rewrite an rg regex into Python re syntax that matches the same text.

        (?<name>...)  -> (?P<name>...)
        \\k<name>      -> (?P=name)

    Raises PatternError for syntax Python either rejects or reads differently:
    Unicode classes (\\p{Lu}, \\pL) and POSIX classes ([[:alpha:]]).
    """
    out = []
    in_class = False
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "\\" and i + 1 < len(pattern):
            nxt = pattern[i + 1]
            if nxt in "pP":
                raise PatternError(f"Unicode class \\{nxt} has no Python equivalent: {pattern!r}")
            if nxt == "k" and pattern.startswith("<", i + 2) and not in_class:
                end = pattern.find(">", i + 3)
                if end != -1:
                    out.append(f"(?P={pattern[i + 3:end]})")
                    i = end + 1
                    continue
            out.append(pattern[i:i + 2])
            i += 2
            continue

        if in_class:
            if pattern.startswith("[:", i):
                raise PatternError(f"POSIX class has no Python equivalent: {pattern!r}")
            if ch == "]":
                in_class = False
            out.append(ch)
            i += 1
            continue

        if ch == "[":
            in_class = True
            out.append(ch)
            i += 1
            # A leading ^ and a leading ] are part of the class, not its end
            if pattern.startswith("^", i):
                out.append("^")
                i += 1
            if pattern.startswith("]", i):
                out.append("]")
                i += 1
            continue

        if pattern.startswith("(?<", i) and not pattern.startswith(("(?<=", "(?<!"), i):
            out.append("(?P<")
            i += 3
            continue

        out.append(ch)
        i += 1
    return "".join(out)


class RipgrepEngine:
    """Drives the rg binary. One subprocess per query, output streamed."""

    name = "rg"

    def __init__(self, rg_path: str | None = None, timeout: float = RG_TIMEOUT):
        self.rg_path = rg_path or RG_PATH
        self.timeout = timeout

    def build_command(
        self,
        query: EngineQuery,
        roots: list[Path],
        *,
        count: bool = False,
    ) -> list[str]:
        """Build the rg argv for a query. Pure; identical input gives identical argv."""
        if not self.rg_path:
            raise EngineError("ripgrep (rg) is not installed. Please install ripgrep.")

        cmd = [self.rg_path, "--color", "never", "--no-messages"]

        if count:
            cmd.extend(["--count-matches", "--with-filename", "--no-heading"])
        else:
            cmd.append("--json")
            if query.before:
                cmd.extend(["-B", str(query.before)])
            if query.after:
                cmd.extend(["-A", str(query.after)])

        if query.fixed_strings:
            cmd.append("--fixed-strings")

        if query.case is CaseMode.SENSITIVE:
            cmd.append("--case-sensitive")
        elif query.case is CaseMode.INSENSITIVE:
            cmd.append("--ignore-case")
        else:
            cmd.append("--smart-case")

        if query.word:
            cmd.append("--word-regexp")

        if query.multiline:
            cmd.append("--multiline")
            if query.dotall and not query.pcre2:
                cmd.append("--multiline-dotall")

        if query.pcre2:
            cmd.append("--pcre2")

        for type_name in query.file_types:
            for glob in TYPE_GLOBS.get(type_name, ()):
                cmd.extend(["--type-add", f"{type_name}:{glob}"])
            cmd.extend(["--type", type_name])

        for glob in query.globs:
            cmd.extend(["--glob", glob])
        for glob in query.excludes:
            cmd.extend(["--glob", f"!{glob}"])

        if query.max_depth is not None:
            cmd.extend(["--max-depth", str(query.max_depth)])
        if query.hidden:
            cmd.append("--hidden")
        if query.no_ignore:
            cmd.append("--no-ignore")
        if query.max_count is not None:
            cmd.extend(["--max-count", str(query.max_count)])
        if query.max_filesize is not None:
            cmd.extend(["--max-filesize", str(query.max_filesize)])

        cmd.extend(["--regexp", query.pattern, "--"])
        cmd.extend(str(root) for root in roots)
        return cmd

    def _stream(self, cmd: list[str]) -> Iterator[str]:
        """
        Yield rg stdout lines. The process is killed if the consumer stops early,
        and the exit status is checked once output is drained.
        """
        logger.debug(f"rg: {' '.join(cmd)}")
        try:
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except OSError as e:
            raise EngineError(f"ripgrep failed to start: {e}", e) from e

        try:
            yield from proc.stdout
            try:
                returncode = proc.wait(timeout=self.timeout)
            except subprocess.TimeoutExpired as e:
                raise EngineError(f"ripgrep timed out after {self.timeout}s", e) from e
            check_exit(returncode, proc.stderr.read())
        finally:
            if proc.poll() is None:
                proc.kill()
                proc.wait()
            proc.stdout.close()
            proc.stderr.close()

    def search(self, query: EngineQuery, roots: list[Path]) -> Iterator[MatchRecord]:
        cmd = self.build_command(query, roots)
        yield from parse_json_stream(self._stream(cmd), query.before, query.after)

    def count_per_file(self, query: EngineQuery, roots: list[Path]) -> Iterator[FileCount]:
        cmd = self.build_command(query, roots, count=True)
        yield from parse_count_lines(self._stream(cmd))


# ---------------------------------------------------------------------------
# Python fallback
# ---------------------------------------------------------------------------


def _is_binary(path: Path) -> bool:
    """Quick binary-file heuristic: a null byte in the first 8 KB."""
    try:
        with path.open("rb") as fh:
            return b"\x00" in fh.read(_BINARY_SNIFF)
    except OSError:
        return True


def _glob_hit(rel: str, name: str, pattern: str) -> bool:
    """rg-style glob: patterns with a slash match the relative path, others the name."""
    pattern = pattern.rstrip("/")
    if "/" in pattern:
        return fnmatch.fnmatchcase(rel, pattern.lstrip("/"))
    return fnmatch.fnmatchcase(name, pattern)


def _line_starts(text: str) -> list[int]:
    starts = [0]
    for i, ch in enumerate(text):
        if ch == "\n":
            starts.append(i + 1)
    return starts


def split_lines(text: str) -> list[str]:
    """
    Split on "\\n" only, numbering lines the way rg does.

    str.splitlines() also breaks on \\x0c, \\x1c, \\u2028 and friends, which
    would shift line numbers away from rg's. A trailing \\r is dropped.
    """
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return [line[:-1] if line.endswith("\r") else line for line in lines]


class PythonEngine:
    """
    Same capability as RipgrepEngine, implemented with os.walk + re.

    Does not read .gitignore files: "respecting ignore files" here means
    skipping IGNORE_DIRS. Python's re supports lookaround and backreferences
    natively, so pcre2 needs no special handling.
    """

    name = "python"

    def compile(self, query: EngineQuery) -> re.Pattern:
        pattern = re.escape(query.pattern) if query.fixed_strings else query.pattern
        if query.word:
            pattern = rf"\b(?:{pattern})\b"
        flags = re.MULTILINE
        if not query.case_sensitive:
            flags |= re.IGNORECASE
        if query.dotall:
            flags |= re.DOTALL
        try:
            return re.compile(pattern, flags)
        except re.error as e:
            raise PatternError(f"regex parse error: {e}", e) from e

    def files(self, query: EngineQuery, roots: list[Path]) -> Iterator[Path]:
        """Walk roots in sorted order, applying hidden/ignore/depth/type/glob/size filters."""
        for root in roots:
            if root.is_file():
                # Explicit file paths are always searched
                yield root
                continue
            for dirpath, dirnames, filenames in os.walk(root):
                current = Path(dirpath)
                depth = len(current.relative_to(root).parts)
                keep = []
                for d in sorted(dirnames):
                    if not query.hidden and d.startswith("."):
                        continue
                    if not query.no_ignore and d in IGNORE_DIRS:
                        continue
                    rel = (current / d).relative_to(root).as_posix()
                    if any(_glob_hit(rel, d, g) for g in query.excludes):
                        continue
                    keep.append(d)
                if query.max_depth is not None and depth + 1 >= query.max_depth:
                    keep = []
                dirnames[:] = keep

                if query.max_depth is not None and depth + 1 > query.max_depth:
                    continue
                for filename in sorted(filenames):
                    if not query.hidden and filename.startswith("."):
                        continue
                    path = current / filename
                    if self._wanted(path, path.relative_to(root).as_posix(), query):
                        yield path

    def _wanted(self, path: Path, rel: str, query: EngineQuery) -> bool:
        name = path.name
        if query.file_types:
            globs = [g for t in query.file_types for g in TYPE_GLOBS.get(t, ())]
            if not any(fnmatch.fnmatchcase(name, g) for g in globs):
                return False
        if query.globs and not any(_glob_hit(rel, name, g) for g in query.globs):
            return False
        if any(_glob_hit(rel, name, g) for g in query.excludes):
            return False
        if query.max_filesize is not None:
            try:
                if path.stat().st_size > query.max_filesize:
                    return False
            except OSError:
                return False
        return not _is_binary(path)

    def _read(self, path: Path) -> str | None:
        try:
            return path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            logger.debug(f"Skipping unreadable {path}: {e}")
            return None

    def _line_records(self, path: Path, text: str, rx: re.Pattern, query: EngineQuery) -> Iterator[MatchRecord]:
        lines = split_lines(text)
        hits = 0
        for i, line in enumerate(lines):
            found = list(rx.finditer(line))
            if not found:
                continue
            yield MatchRecord(
                file=path,
                line=i + 1,
                text=line,
                spans=tuple((m.start(), m.end()) for m in found if m.end() > m.start()),
                before=tuple(lines[max(0, i - query.before):i]),
                after=tuple(lines[i + 1:i + 1 + query.after]),
            )
            hits += 1
            if query.max_count is not None and hits >= query.max_count:
                return

    def _multiline_records(self, path: Path, text: str, rx: re.Pattern, query: EngineQuery) -> Iterator[MatchRecord]:
        """Matches may span lines; overlapping line ranges merge into one record."""
        lines = split_lines(text)
        starts = _line_starts(text)
        groups: list[list] = []  # [first_line, last_line, [(abs_start, abs_end)]]

        for m in rx.finditer(text):
            first = text.count("\n", 0, m.start())
            end = max(m.end() - 1, m.start())
            last = text.count("\n", 0, end) if m.end() > m.start() else first
            if groups and first <= groups[-1][1]:
                groups[-1][1] = max(groups[-1][1], last)
                groups[-1][2].append((m.start(), m.end()))
            else:
                if query.max_count is not None and len(groups) >= query.max_count:
                    break
                groups.append([first, last, [(m.start(), m.end())]])

        for first, last, spans in groups:
            origin = starts[first]
            yield MatchRecord(
                file=path,
                line=first + 1,
                text="\n".join(lines[first:last + 1]),
                spans=tuple((s - origin, e - origin) for s, e in spans if e > s),
                before=tuple(lines[max(0, first - query.before):first]),
                after=tuple(lines[last + 1:last + 1 + query.after]),
            )

    def search(self, query: EngineQuery, roots: list[Path]) -> Iterator[MatchRecord]:
        rx = self.compile(query)
        for path in self.files(query, roots):
            text = self._read(path)
            if text is None:
                continue
            if query.multiline:
                yield from self._multiline_records(path, text, rx, query)
            else:
                yield from self._line_records(path, text, rx, query)

    def count_per_file(self, query: EngineQuery, roots: list[Path]) -> Iterator[FileCount]:
        rx = self.compile(query)
        for path in self.files(query, roots):
            text = self._read(path)
            if text is None:
                continue
            if query.multiline:
                count = sum(1 for _ in rx.finditer(text))
            else:
                count = 0
                matched_lines = 0
                for line in split_lines(text):
                    found = sum(1 for _ in rx.finditer(line))
                    if not found:
                        continue
                    count += found
                    matched_lines += 1
                    if query.max_count is not None and matched_lines >= query.max_count:
                        break
            if count:
                yield FileCount(file=path, count=count)


def default_engine(prefer: str = "auto") -> SearchEngine:
    """rg when available, else the Python fallback. prefer: auto | rg | python."""
    if prefer == "python":
        return PythonEngine()
    if prefer == "rg":
        if not RG_PATH:
            raise EngineError("ripgrep (rg) is not installed. Please install ripgrep.")
        return RipgrepEngine()
    if RG_PATH:
        return RipgrepEngine()
    logger.info("rg not found on PATH, using the Python engine")
    return PythonEngine()
