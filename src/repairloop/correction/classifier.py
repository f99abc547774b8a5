"""Failure classification for the repair loop.

Maps raw test/typecheck/lint/build output to a typed classification with a
stable signature used for repeat detection. Classification is deterministic
and never calls an LLM.
"""

from __future__ import annotations

import hashlib
import logging
import re
from pathlib import PurePath

from .models import FailureClassification, FailureType

logger = logging.getLogger(__name__)

SIGNATURE_LENGTH = 16
MAX_FILE_REFERENCES = 10
MAX_FAILING_TESTS = 5

# Volatile fragments and their placeholders, applied in order
VOLATILE_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    # Timestamps
    (re.compile(r"\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:?\d{2})?"), "[TIMESTAMP]"),
    (re.compile(r"\b\d{2}:\d{2}:\d{2}(?:\.\d+)?\b"), "[TIME]"),
    # UUIDs before hex blobs so they keep their own token
    (
        re.compile(r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}\b"),
        "[UUID]",
    ),
    # Process ids
    (re.compile(r"\bpid[:=\s]+\d+\b", re.IGNORECASE), "pid:[PID]"),
    (re.compile(r"\b(process|worker)[:\s#]+\d+\b", re.IGNORECASE), r"\1:[PID]"),
    # Memory addresses and hex blobs
    (re.compile(r"0x[0-9a-fA-F]{6,}"), "[ADDR]"),
    (re.compile(r"\b[0-9a-fA-F]{16,}\b"), "[HEX]"),
    # Home directories
    (re.compile(r"/Users/[^/\s]+/"), "[HOME]/"),
    (re.compile(r"/home/[^/\s]+/"), "[HOME]/"),
    (re.compile(r"/root/"), "[HOME]/"),
    (re.compile(r"[A-Za-z]:\\Users\\[^\\\s]+\\", re.IGNORECASE), r"[HOME]\\"),
    # Elapsed durations
    (
        re.compile(r"\b\d+(?:\.\d+)?\s*(?:ms|s|sec|secs|seconds?|milliseconds?)\b", re.IGNORECASE),
        "[DURATION]",
    ),
    # Stack frame locations
    (re.compile(r"\bat\s+.*:\d+:\d+\)?$", re.MULTILINE), "at [STACK_FRAME]"),
    (re.compile(r'File "[^"]+", line \d+'), 'File "[FRAME]"'),
]

# Detectors in priority order: the first type with a matching pattern wins
FAILURE_PATTERNS: list[tuple[FailureType, list[re.Pattern[str]]]] = [
    (
        FailureType.TEST_ASSERTION,
        [
            re.compile(r"AssertionError"),
            re.compile(r"expect\(.*\)\.(?:to|not)", re.IGNORECASE),
            re.compile(r"expected .* to (?:be|equal|match|have|contain)", re.IGNORECASE),
            re.compile(r"assertion failed", re.IGNORECASE),
            re.compile(r"^\s*FAIL(?:ED)?\s+", re.MULTILINE),
            re.compile(r"\b\d+\s+(?:failing|failed)\b", re.IGNORECASE),
            re.compile(r"\btest\s+failed\b", re.IGNORECASE),
            re.compile(r"[✗✕]"),
        ],
    ),
    (
        FailureType.TYPECHECK,
        [
            re.compile(r"\bTS\d{4}:"),
            re.compile(r"\btype\s+error\b", re.IGNORECASE),
            re.compile(r"type '.*' is not assignable", re.IGNORECASE),
            re.compile(r"property '.*' does not exist", re.IGNORECASE),
            re.compile(r"cannot find name", re.IGNORECASE),
            re.compile(r"argument of type", re.IGNORECASE),
            re.compile(r"has no exported member", re.IGNORECASE),
            re.compile(r"error: .*\[(?:arg-type|assignment|attr-defined|return-value|union-attr|call-arg)\]"),
            re.compile(r"\bincompatible types?\b", re.IGNORECASE),
        ],
    ),
    (
        FailureType.LINT,
        [
            re.compile(r"\beslint\b", re.IGNORECASE),
            re.compile(r"\btslint\b", re.IGNORECASE),
            re.compile(r"\bprettier\b", re.IGNORECASE),
            re.compile(r"\bruff\b", re.IGNORECASE),
            re.compile(r"\bflake8\b", re.IGNORECASE),
            re.compile(r"^\s*\d+:\d+\s+(?:error|warning)\s+", re.MULTILINE),
            re.compile(r"\blint.*error", re.IGNORECASE),
            re.compile(r"✖\s+\d+\s+(?:problem|error)", re.IGNORECASE),
            re.compile(r":\d+:\d+: [EWF]\d{3} "),
        ],
    ),
    (
        FailureType.BUILD_COMPILE,
        [
            re.compile(r"compilation failed", re.IGNORECASE),
            re.compile(r"failed to compile", re.IGNORECASE),
            re.compile(r"build failed", re.IGNORECASE),
            re.compile(r"\berror\s+TS\d+", re.IGNORECASE),
            re.compile(r"SyntaxError"),
            re.compile(r"IndentationError"),
            re.compile(r"ReferenceError.*not defined", re.IGNORECASE),
        ],
    ),
    (
        FailureType.TOOLING_ENV,
        [
            re.compile(r"cannot find module", re.IGNORECASE),
            re.compile(r"module not found", re.IGNORECASE),
            re.compile(r"ModuleNotFoundError"),
            re.compile(r"No module named", re.IGNORECASE),
            re.compile(r"\bENOENT\b"),
            re.compile(r"command not found", re.IGNORECASE),
            re.compile(r"node version", re.IGNORECASE),
            re.compile(r"\b(?:npm|pnpm)\s+ERR!"),
            re.compile(r"\byarn\s+error\b", re.IGNORECASE),
            re.compile(r"\b(?:EACCES|EPERM)\b"),
            re.compile(r"missing dependency", re.IGNORECASE),
            re.compile(r"peer dep", re.IGNORECASE),
            re.compile(r"could not resolve", re.IGNORECASE),
            re.compile(r"failed to load config", re.IGNORECASE),
            re.compile(r"pip.*(?:ResolutionImpossible|No matching distribution)", re.IGNORECASE),
        ],
    ),
    (
        FailureType.TIMEOUT,
        [
            re.compile(r"timeout\s+(?:of\s+)?\S+\s+exceeded", re.IGNORECASE),
            re.compile(r"timed?\s*out", re.IGNORECASE),
            re.compile(r"\bETIMEDOUT\b"),
            re.compile(r"deadline exceeded", re.IGNORECASE),
        ],
    ),
]

FILE_REFERENCE_PATTERNS: list[re.Pattern[str]] = [
    # Every path segment ends in a separator; segments never overlap
    re.compile(
        r"(?<![\w./\\-])"
        r"((?:[A-Za-z]:)?(?:\.{1,2}[/\\]|[/\\])*(?:[\w\-]+[./\\])*[\w\-]+\.(?:py|pyi|ts|tsx|js|jsx|mjs|cjs|go|rs|java|kt|rb|c|cc|cpp|h|hpp|cs))"
        r"(?!\w)(?::\d+(?::\d+)?)?"
    ),
    re.compile(r'File "([^"]+)"'),
]

TEST_NAME_PATTERNS: list[re.Pattern[str]] = [
    # pytest
    re.compile(r"^FAILED\s+(\S+::\S+)", re.MULTILINE),
    # jest / vitest
    re.compile(r"[✗✕×]\s+(.+?)(?:\s+\(\d+\s*m?s\))?$", re.MULTILINE),
    re.compile(r"●\s+(.+?\s›\s.+)$", re.MULTILINE),
    # mocha
    re.compile(r"^\s*\d+\)\s+(.+)$", re.MULTILINE),
]

EXCLUDED_PATH_FRAGMENTS = ("node_modules", "site-packages", "dist-packages")

_TYPE_LABELS: dict[FailureType, str] = {
    FailureType.TEST_ASSERTION: "Test failed",
    FailureType.TYPECHECK: "Type error",
    FailureType.LINT: "Lint error",
    FailureType.BUILD_COMPILE: "Build failed",
    FailureType.TOOLING_ENV: "Environment issue",
    FailureType.TIMEOUT: "Timeout",
    FailureType.UNKNOWN: "Unknown error",
}


def normalize_output(raw: str) -> str:
    """Strip volatile data so equivalent failures normalize identically."""
    normalized = raw
    for pattern, replacement in VOLATILE_PATTERNS:
        normalized = pattern.sub(replacement, normalized)

    lines = (line.strip() for line in normalized.splitlines())
    return "\n".join(line for line in lines if line)


def _detect(normalized: str) -> tuple[FailureType, list[str]]:
    """Return the first matching failure type and up to five signal lines."""
    lines = normalized.split("\n")
    for failure_type, patterns in FAILURE_PATTERNS:
        for pattern in patterns:
            if not pattern.search(normalized):
                continue
            signals = [line[:200] for line in lines if pattern.search(line)][:5]
            return failure_type, signals
    return FailureType.UNKNOWN, []


def extract_file_references(output: str) -> list[str]:
    """Extract path-like references, without line/column suffixes."""
    files: list[str] = []
    for pattern in FILE_REFERENCE_PATTERNS:
        for match in pattern.finditer(output):
            path = match.group(1).strip()
            if not path or any(frag in path for frag in EXCLUDED_PATH_FRAGMENTS):
                continue
            if path not in files:
                files.append(path)
    return files[:MAX_FILE_REFERENCES]


def extract_failing_tests(output: str) -> list[str]:
    """Extract failing test names."""
    tests: list[str] = []
    for pattern in TEST_NAME_PATTERNS:
        for match in pattern.finditer(output):
            name = match.group(1).strip()
            if name and len(name) < 200 and name not in tests:
                tests.append(name)
    return tests[:MAX_FAILING_TESTS]


def compute_signature(failure_type: FailureType, normalized_key: str) -> str:
    """Stable short hash identifying a failure."""
    digest = hashlib.sha256(f"{failure_type.value}:{normalized_key}".encode()).hexdigest()
    return digest[:SIGNATURE_LENGTH]


def _summarize(
    failure_type: FailureType,
    signals: list[str],
    files: list[str],
    tests: list[str],
) -> str:
    parts = [_TYPE_LABELS[failure_type]]

    if tests:
        more = f" +{len(tests) - 1} more" if len(tests) > 1 else ""
        parts.append(f'in "{tests[0]}"{more}')
    elif files:
        more = f" +{len(files) - 1} more" if len(files) > 1 else ""
        parts.append(f"in {PurePath(files[0]).name}{more}")

    if signals and len(signals[0]) < 80:
        first = signals[0]
        parts.append(f"- {first[:60]}{'...' if len(first) > 60 else ''}")

    return " ".join(parts)[:200]


def classify_failure(raw_output: str) -> FailureClassification:
    """Classify raw tool output.

    Total function: any input, including None or non-string values, yields a
    classification.

    Args:
        raw_output: Combined stdout/stderr of the failing command.

    Returns:
        Classification with a signature that ignores timestamps, paths, UUIDs,
        addresses and durations but changes with the error text itself.
    """
    text = raw_output if isinstance(raw_output, str) else ("" if raw_output is None else str(raw_output))

    normalized = normalize_output(text)
    failure_type, signals = _detect(normalized)
    file_references = extract_file_references(text)
    failing_tests = extract_failing_tests(text)

    # Signature covers the full normalized text
    normalized_key = normalized
    signature = compute_signature(failure_type, normalized_key)

    logger.debug("Classified failure as %s (signature=%s)", failure_type.value, signature)

    return FailureClassification(
        failure_type=failure_type,
        is_code_fixable=failure_type.is_code_fixable,
        failure_signature=signature,
        summary=_summarize(failure_type, signals, file_references, failing_tests),
        file_references=file_references,
        normalized_key=normalized_key,
        failing_tests=failing_tests,
    )


def tooling_failure(stage: str, error: BaseException | str) -> FailureClassification:
    """Synthetic classification for a collaborator that raised."""
    detail = error if isinstance(error, str) else f"{type(error).__name__}: {error}"
    normalized_key = f"{stage}: {normalize_output(detail)}"
    return FailureClassification(
        failure_type=FailureType.TOOLING_ENV,
        is_code_fixable=False,
        failure_signature=compute_signature(FailureType.TOOLING_ENV, normalized_key),
        summary=f"{_TYPE_LABELS[FailureType.TOOLING_ENV]} - {stage} failed: {detail}"[:200],
        normalized_key=normalized_key,
    )


class ConsecutiveFailureTracker:
    """Counts how many times in a row the same signature was seen."""

    def __init__(self) -> None:
        self._previous_signature: str | None = None
        self._count = 0

    @property
    def count(self) -> int:
        return self._count

    @property
    def previous_signature(self) -> str | None:
        return self._previous_signature

    def record_failure(self, signature: str) -> int:
        """Record a failure and return the consecutive count."""
        if signature == self._previous_signature:
            self._count += 1
        else:
            self._previous_signature = signature
            self._count = 1
        return self._count

    def has_repeated_failure(self, threshold: int) -> bool:
        return self._count >= threshold

    def reset(self) -> None:
        self._previous_signature = None
        self._count = 0
