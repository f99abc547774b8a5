"""Tests for failure classification and repeat tracking."""

from __future__ import annotations

import time

import pytest

from repairloop.correction.classifier import (
    MAX_FILE_REFERENCES,
    SIGNATURE_LENGTH,
    ConsecutiveFailureTracker,
    classify_failure,
    compute_signature,
    extract_failing_tests,
    extract_file_references,
    normalize_output,
    tooling_failure,
)
from repairloop.correction.models import FailureType

JEST_ASSERTION = """
    FAIL src/__tests__/example.test.ts
    ✕ should add two numbers (5 ms)

    expect(received).toBe(expected)

    Expected: 4
    Received: 5

    at Object.<anonymous> (src/__tests__/example.test.ts:10:20)
"""

PYTEST_ASSERTION = """
tests/test_math.py::test_add FAILED
    def test_add():
>       assert add(1, 1) == 3
E       AssertionError: assert 2 == 3

FAILED tests/test_math.py::test_add - AssertionError: assert 2 == 3
1 failed in 0.12s
"""


class TestClassifyFailure:
    def test_test_assertion(self):
        c = classify_failure(JEST_ASSERTION)
        assert c.failure_type == FailureType.TEST_ASSERTION
        assert c.is_code_fixable is True
        assert len(c.failure_signature) == SIGNATURE_LENGTH
        assert "Test failed" in c.summary

    def test_pytest_assertion(self):
        c = classify_failure(PYTEST_ASSERTION)
        assert c.failure_type == FailureType.TEST_ASSERTION
        assert "tests/test_math.py::test_add" in c.failing_tests
        assert "tests/test_math.py" in c.file_references

    def test_typescript_type_error(self):
        output = """
            Type 'string' is not assignable to type 'number'.
            property 'foo' does not exist on type 'Bar'.

            src/utils.ts:25:10
        """
        c = classify_failure(output)
        assert c.failure_type == FailureType.TYPECHECK
        assert c.is_code_fixable is True

    def test_mypy_error(self):
        output = 'app/models.py:12: error: Incompatible types in assignment  [assignment]'
        c = classify_failure(output)
        assert c.failure_type == FailureType.TYPECHECK
        assert c.file_references == ["app/models.py"]

    def test_lint_error(self):
        output = """
            src/index.ts
              5:10  error  'foo' is defined but never used  @typescript-eslint/no-unused-vars

            ✖ 1 problem (1 error, 0 warnings)
        """
        c = classify_failure(output)
        assert c.failure_type == FailureType.LINT
        assert c.is_code_fixable is True

    def test_build_error(self):
        output = """
            Failed to compile.

            SyntaxError: Unexpected token (12:5)

            Build failed with 1 error.
        """
        c = classify_failure(output)
        assert c.failure_type == FailureType.BUILD_COMPILE
        assert c.is_code_fixable is True

    def test_tooling_env_error(self):
        output = """
            Error: Cannot find module 'vitest'
            Require stack:
            - /project/node_modules/.bin/vitest

            npm ERR! code ENOENT
        """
        c = classify_failure(output)
        assert c.failure_type == FailureType.TOOLING_ENV
        assert c.is_code_fixable is False

    def test_python_missing_module(self):
        c = classify_failure("ModuleNotFoundError: No module named 'requests'")
        assert c.failure_type == FailureType.TOOLING_ENV
        assert c.is_code_fixable is False

    def test_timeout(self):
        output = """
            Error: Timeout of 5000ms exceeded for test "should do something"
            Test timed out
        """
        c = classify_failure(output)
        assert c.failure_type == FailureType.TIMEOUT
        assert c.is_code_fixable is False

    def test_unknown(self):
        c = classify_failure("something odd happened")
        assert c.failure_type == FailureType.UNKNOWN
        assert c.is_code_fixable is False
        assert c.summary.startswith("Unknown error")

    def test_short_assertion_text(self):
        c = classify_failure("FAIL expected 1 to be 2")
        assert c.failure_type == FailureType.TEST_ASSERTION

    @pytest.mark.parametrize("raw", [None, "", 42])
    def test_never_raises(self, raw):
        c = classify_failure(raw)
        assert c.failure_type == FailureType.UNKNOWN
        assert len(c.failure_signature) == SIGNATURE_LENGTH

    def test_summary_is_bounded(self):
        c = classify_failure("AssertionError: " + "x" * 1000)
        assert len(c.summary) <= 200


class TestSignatures:
    def test_stable_across_timestamps(self):
        first = "FAIL src/test.ts\nExpected: 1\nReceived: 2\nat 2025-01-24T10:00:00.000Z"
        second = "FAIL src/test.ts\nExpected: 1\nReceived: 2\nat 2025-01-25T15:30:00.000Z"
        assert classify_failure(first).failure_signature == classify_failure(second).failure_signature

    def test_stable_across_uuids(self):
        first = "AssertionError: request 123e4567-e89b-12d3-a456-426614174000 returned 500"
        second = "AssertionError: request 9f8e7d6c-5b4a-3210-fedc-ba9876543210 returned 500"
        assert classify_failure(first).failure_signature == classify_failure(second).failure_signature

    def test_stable_across_home_dirs_and_durations(self):
        first = "FAIL /home/alice/app/test_x.py took 1.5s\nAssertionError"
        second = "FAIL /home/bob/app/test_x.py took 3.25s\nAssertionError"
        assert classify_failure(first).failure_signature == classify_failure(second).failure_signature

    def test_changes_with_error_text(self):
        first = classify_failure("AssertionError: expected 1 to be 2")
        second = classify_failure("AssertionError: expected 1 to be 3")
        assert first.failure_signature != second.failure_signature

    def test_includes_failure_type(self):
        assert compute_signature(FailureType.LINT, "same") != compute_signature(
            FailureType.TYPECHECK, "same"
        )


class TestNormalizeOutput:
    def test_strips_timestamps(self):
        normalized = normalize_output("2025-01-24T10:30:00.123Z Error occurred at 10:30:00")
        assert "2025-01-24" not in normalized
        assert "[TIMESTAMP]" in normalized
        assert "[TIME]" in normalized

    def test_strips_home_paths(self):
        normalized = normalize_output("/Users/john/projects/app/src/index.ts")
        assert "/Users/john" not in normalized
        assert "[HOME]" in normalized

    def test_strips_uuids(self):
        normalized = normalize_output("Request a1b2c3d4-e5f6-7890-abcd-ef1234567890 failed")
        assert "[UUID]" in normalized

    def test_strips_memory_addresses(self):
        assert "[ADDR]" in normalize_output("Object at 0x7fff5fbff8c0 leaked")

    def test_strips_durations(self):
        assert "[DURATION]" in normalize_output("Test completed in 1234ms (5.5 seconds total)")

    def test_strips_pids(self):
        assert normalize_output("worker pid=4242 crashed") == "worker pid:[PID] crashed"

    def test_drops_blank_lines(self):
        assert normalize_output("  a  \n\n   \n b") == "a\nb"


class TestExtraction:
    def test_file_references_drop_line_numbers(self):
        refs = extract_file_references(
            "Error in src/components/Button.tsx:45:10\nAlso affected: src/utils/helpers.ts"
        )
        assert refs == ["src/components/Button.tsx", "src/utils/helpers.ts"]

    def test_file_references_skip_dependencies(self):
        refs = extract_file_references(
            "at /app/node_modules/lib/index.js:1:1\n"
            'File "/usr/lib/python3/site-packages/x/y.py", line 3\n'
            "at src/app.js:2:2"
        )
        assert refs == ["src/app.js"]

    def test_file_references_are_capped(self):
        output = "\n".join(f"src/mod_{i}.py:1" for i in range(20))
        assert len(extract_file_references(output)) == MAX_FILE_REFERENCES

    def test_file_references_keep_path_prefixes(self):
        refs = extract_file_references(
            "./src/app.ts:1:1 failed\n/srv/app/main.py:3\nC:\\proj\\lib\\util.py line 4"
        )
        assert refs == ["./src/app.ts", "/srv/app/main.py", "C:\\proj\\lib\\util.py"]

    def test_file_references_ignore_embedded_extensions(self):
        assert extract_file_references("sha=abc123.pyc token.tsxyz") == []

    @pytest.mark.parametrize(
        "token",
        [
            "a" * 20_000,
            "a." * 10_000,
            "a/" * 10_000,
            "QUJDREVGR0hJSktMTU5PUFFSU1RVVldYWVo0123456789+/" * 400,
        ],
    )
    def test_long_tokens_classify_quickly(self, token):
        started = time.monotonic()
        c = classify_failure(f"FAIL expected 1 to be 2\n{token}\n")
        elapsed = time.monotonic() - started

        assert c.failure_type == FailureType.TEST_ASSERTION
        assert c.file_references == []
        assert elapsed < 2.0

    def test_failing_tests_from_jest(self):
        assert extract_failing_tests(JEST_ASSERTION) == ["should add two numbers"]


class TestToolingFailure:
    def test_synthetic_classification(self):
        c = tooling_failure("diff generation", RuntimeError("boom"))
        assert c.failure_type == FailureType.TOOLING_ENV
        assert c.is_code_fixable is False
        assert "diff generation failed" in c.summary
        assert "RuntimeError: boom" in c.summary


class TestConsecutiveFailureTracker:
    def test_counts_identical_failures(self):
        tracker = ConsecutiveFailureTracker()
        assert tracker.record_failure("sig_a") == 1
        assert tracker.record_failure("sig_a") == 2
        assert tracker.record_failure("sig_a") == 3

    def test_resets_on_different_failure(self):
        tracker = ConsecutiveFailureTracker()
        tracker.record_failure("sig_a")
        tracker.record_failure("sig_a")
        assert tracker.record_failure("sig_b") == 1
        assert tracker.previous_signature == "sig_b"

    def test_repeated_failure_threshold(self):
        tracker = ConsecutiveFailureTracker()
        tracker.record_failure("sig_a")
        assert not tracker.has_repeated_failure(2)
        tracker.record_failure("sig_a")
        assert tracker.has_repeated_failure(2)

    def test_reset(self):
        tracker = ConsecutiveFailureTracker()
        tracker.record_failure("sig_a")
        tracker.record_failure("sig_a")
        tracker.reset()
        assert tracker.count == 0
        assert tracker.previous_signature is None
