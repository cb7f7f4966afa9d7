"""
spec_forge.py - Forges raw options into a SearchSpec.

Everything the user typed (CLI namespace, dict from a caller) goes in; one
canonical, validated, immutable SearchSpec comes out. Pure: no I/O, and the
same raw options always forge the same spec.

Convenience inputs expanded here:
    extensions="py,js"   -> file_types {"py", "js"}
    log_level="error"    -> line filter \\b(?:ERROR|FATAL|CRITICAL)\\b
    max_filesize="2M"    -> 2097152
    changed_within="7d"  -> timedelta(days=7)
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Iterable, Mapping

from .errors import ValidationError
from .models import CaseMode, ContextLines, MatchMode, SearchSpec
from .ripgrep import EXTENSION_TYPES, TYPE_GLOBS

logger = logging.getLogger(__name__)

# Ordered least to most severe. Each level matches itself and everything above.
LOG_LEVELS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("debug", ("DEBUG",)),
    ("info", ("INFO",)),
    ("warn", ("WARN", "WARNING")),
    ("error", ("ERROR",)),
    ("fatal", ("FATAL", "CRITICAL")),
)

_LEVEL_ALIASES = {"warning": "warn", "critical": "fatal", "err": "error"}

_SIZE_RE = re.compile(r"^\s*(\d+)\s*([KMG]?)B?\s*$", re.IGNORECASE)
_SIZE_UNITS = {"": 1, "K": 1024, "M": 1024 ** 2, "G": 1024 ** 3}

_AGE_RE = re.compile(r"^\s*(\d+)\s*([smhdw])\s*$", re.IGNORECASE)
_AGE_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days", "w": "weeks"}


@dataclass(frozen=True)
class BuildResult:
    """A forged spec plus the overrides the user should hear about."""

    spec: SearchSpec
    warnings: tuple[str, ...] = field(default_factory=tuple)


# ---------------------------------------------------------------------------
# Expansion helpers
# ---------------------------------------------------------------------------


def _split_tokens(value: str | Iterable[str] | None) -> list[str]:
    """Accept "py, js" or ["py", "js,ts"]; return clean lowercase tokens."""
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    tokens = []
    for item in value:
        tokens.extend(part.strip().lower() for part in str(item).split(","))
    return [t for t in tokens if t]


def expand_extensions(value: str | Iterable[str] | None) -> frozenset[str]:
    """Expand "py,.md,yml" into file type names. Unknown tokens are a ValidationError."""
    types = set()
    for token in _split_tokens(value):
        ext = token.lstrip(".").lstrip("*").lstrip(".")
        if ext in EXTENSION_TYPES:
            types.add(EXTENSION_TYPES[ext])
        elif ext in TYPE_GLOBS:
            types.add(ext)
        else:
            raise ValidationError(f"Unknown file type token: {token!r}")
    return frozenset(types)


def expand_types(value: str | Iterable[str] | None) -> frozenset[str]:
    """Validate file type names ("py", "markdown"). Extensions are accepted too."""
    return expand_extensions(value)


def expand_log_level(level: str) -> str:
    """
    Minimum log level -> regex over that level and every level above it.

    "error" -> \\b(?:ERROR|FATAL|CRITICAL)\\b
    """
    key = level.strip().lower()
    key = _LEVEL_ALIASES.get(key, key)
    names = [name for name, _ in LOG_LEVELS]
    if key not in names:
        raise ValidationError(
            f"Unknown log level {level!r} (expected one of: {', '.join(names)})"
        )
    tokens = [tok for _, toks in LOG_LEVELS[names.index(key):] for tok in toks]
    return r"\b(?:" + "|".join(tokens) + r")\b"


def parse_size(value: str | int) -> int:
    """"512" / "10K" / "2M" / "1G" -> bytes."""
    if isinstance(value, int):
        if value < 0:
            raise ValidationError(f"Size filter must not be negative: {value}")
        return value
    m = _SIZE_RE.match(str(value))
    if not m:
        raise ValidationError(f"Unparseable size filter: {value!r}")
    return int(m.group(1)) * _SIZE_UNITS[m.group(2).upper()]


def parse_age(value: str | timedelta) -> timedelta:
    """"30m" / "12h" / "7d" / "2w" -> timedelta."""
    if isinstance(value, timedelta):
        return value
    m = _AGE_RE.match(str(value))
    if not m:
        raise ValidationError(f"Unparseable time filter: {value!r}")
    return timedelta(**{_AGE_UNITS[m.group(2).lower()]: int(m.group(1))})


def _non_negative(raw: Mapping[str, Any], key: str) -> int | None:
    value = raw.get(key)
    if value is None:
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer, got {value!r}") from None
    if number < 0:
        raise ValidationError(f"{key} must not be negative, got {number}")
    return number


def _resolve_case(raw: Mapping[str, Any], warnings: list[str]) -> CaseMode:
    explicit = raw.get("case")
    if explicit:
        try:
            return CaseMode(str(explicit).lower())
        except ValueError:
            raise ValidationError(f"Unknown case mode: {explicit!r}") from None

    requested = [
        mode for flag, mode in (
            ("case_sensitive", CaseMode.SENSITIVE),
            ("ignore_case", CaseMode.INSENSITIVE),
            ("smart_case", CaseMode.SMART),
        )
        if raw.get(flag)
    ]
    if not requested:
        return CaseMode.SMART
    if len(requested) > 1:
        # sensitive > insensitive > smart
        warnings.append(
            f"Conflicting case flags ({', '.join(m.value for m in requested)}); "
            f"using {requested[0].value}"
        )
    return requested[0]


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------


def build(
    raw: Mapping[str, Any],
    *,
    for_replace: bool = False,
    literal_wins: bool = True,
) -> BuildResult:
    """
    Forge a SearchSpec from raw options.

    Args:
        raw: Option mapping. Recognised keys: pattern, replacement, literal,
            case / ignore_case / smart_case / case_sensitive, word, multiline,
            dotall, advanced (alias pcre2), types, extensions, globs, excludes,
            context, before, after, max_depth, hidden, no_ignore, max_count,
            log_level, max_filesize, changed_within.
        for_replace: Require a replacement string.
        literal_wins: Flag precedence policy. True (default): a literal request
            drops multiline/dotall/advanced with a warning. False: those
            regex-only features win and the literal request is dropped.

    Returns:
        BuildResult with the spec and any override warnings.

    Raises:
        ValidationError: missing pattern/replacement, unknown file type or log
            level, unparseable size/time filter, negative counts.
    """
    warnings: list[str] = []

    pattern = raw.get("pattern")
    if pattern is None or not str(pattern):
        raise ValidationError("A search pattern is required")
    pattern = str(pattern)

    replacement = raw.get("replacement")
    if for_replace and replacement is None:
        raise ValidationError("A replacement string is required for replace")

    literal = bool(raw.get("literal"))
    multiline = bool(raw.get("multiline"))
    dotall = bool(raw.get("dotall"))
    advanced = bool(raw.get("advanced") or raw.get("pcre2"))

    if dotall and not multiline:
        multiline = True
        warnings.append("--dotall implies --multiline; enabling multiline")

    if literal:
        conflicts = [
            name for name, on in (("multiline", multiline), ("dotall", dotall), ("advanced", advanced))
            if on
        ]
        if conflicts and literal_wins:
            warnings.append(
                f"Literal mode overrides {', '.join(conflicts)}; "
                "those features are disabled"
            )
            multiline = dotall = advanced = False
        elif conflicts:
            warnings.append(
                f"{', '.join(conflicts)} override literal mode; "
                "the pattern is treated as a regex"
            )
            literal = False

    case = _resolve_case(raw, warnings)

    file_types = expand_types(raw.get("types")) | expand_extensions(raw.get("extensions"))

    before = after = _non_negative(raw, "context") or 0
    if raw.get("before") is not None:
        before = _non_negative(raw, "before")
    if raw.get("after") is not None:
        after = _non_negative(raw, "after")

    line_filters: tuple[str, ...] = ()
    if raw.get("log_level"):
        line_filters = (expand_log_level(str(raw["log_level"])),)

    max_filesize = raw.get("max_filesize")
    changed_within = raw.get("changed_within")

    spec = SearchSpec(
        pattern=pattern,
        replacement=None if replacement is None else str(replacement),
        mode=MatchMode.LITERAL if literal else MatchMode.REGEX,
        case=case,
        word_boundary=bool(raw.get("word")),
        multiline=multiline,
        dotall=dotall,
        advanced_engine=advanced,
        file_types=file_types,
        glob_includes=frozenset(_split_globs(raw.get("globs"))),
        glob_excludes=frozenset(_split_globs(raw.get("excludes"))),
        context=ContextLines(before=before, after=after),
        max_depth=_non_negative(raw, "max_depth"),
        include_hidden=bool(raw.get("hidden")),
        respect_ignore_files=not raw.get("no_ignore"),
        max_matches_per_file=_non_negative(raw, "max_count"),
        line_filters=line_filters,
        max_filesize=None if max_filesize in (None, "") else parse_size(max_filesize),
        changed_within=None if changed_within in (None, "") else parse_age(changed_within),
    )

    for message in warnings:
        logger.warning(message)

    return BuildResult(spec=spec, warnings=tuple(warnings))


def _split_globs(value: str | Iterable[str] | None) -> list[str]:
    """Globs may contain commas inside braces, so only lists are split, never strings."""
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    return [str(v) for v in value if str(v).strip()]
