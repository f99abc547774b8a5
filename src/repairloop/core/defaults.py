"""Default configuration values for repairloop.

All configurable defaults are defined here. These can be overridden by:
1. User config file (~/.repairloop/config.yaml)
2. Project config file (.repairloop/config.yaml)
3. Environment variables
4. CLI flags

Priority (highest to lowest):
CLI flags > Environment > Project config > User config > Defaults
"""

from __future__ import annotations

# =============================================================================
# SELF-CORRECTION LOOP
# =============================================================================

# Repair iterations (applied diffs) allowed before handing back to a human
DEFAULT_MAX_REPAIR_ITERATIONS: int = 2

# Identical failure signatures in a row before the loop gives up
DEFAULT_MAX_CONSECUTIVE_SAME_FAILURE: int = 2

# Re-run the approved test command automatically after applying a diff
DEFAULT_ALLOW_AUTO_RERUN_ALLOWLISTED_TESTS: bool = True

# Stop when the human denies access to files outside the allowed scope
DEFAULT_STOP_ON_SCOPE_EXPANSION_DENIED: bool = True

# Stop when a proposed diff fails to apply cleanly twice in a row
DEFAULT_STOP_ON_REPEATED_STALE_CONTEXT: bool = True

# Retry a timed-out diagnosis / diff generation once before stopping
DEFAULT_TIMEOUT_RETRY_ONCE: bool = True

# Stage timeouts in milliseconds
DEFAULT_REPAIR_DIAGNOSIS_TIMEOUT_MS: int = 60_000
DEFAULT_REPAIR_DIFF_GEN_TIMEOUT_MS: int = 120_000
DEFAULT_TEST_RUN_TIMEOUT_MS: int = 300_000

# Empty diffs in a row before the loop gives up
EMPTY_DIFF_LIMIT: int = 2

# Failed diff applications in a row before the loop gives up
STALE_CONTEXT_LIMIT: int = 2

# =============================================================================
# LOGGING
# =============================================================================

DEFAULT_LOG_LEVEL: str = "WARNING"

LOG_FORMAT: str = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
