"""repairloop: bounded self-correction for failing verification steps.

Classifies test, typecheck, lint and build output into stable failure
signatures, drives a budgeted diagnose -> diff -> apply -> re-verify loop
through injected collaborators, and hands a decision menu back to a human
when the loop has to stop.

Usage:
    # CLI
    $ repairloop classify pytest-output.txt
    $ repairloop options budget_exhausted

    # Python API
    from repairloop import RepairCapabilities, SelfCorrectionRunner

    runner = SelfCorrectionRunner("task-1", RepairCapabilities(run_test=..., ...))
    stop = await runner.start_repair_loop(failure, ["src/app.py"], "pytest")
"""

try:
    from importlib.metadata import version as _get_version

    __version__ = _get_version("repairloop")
except Exception:
    __version__ = "0.0.0-dev"


# Core exports (lazy imports for faster startup)
def __getattr__(name: str):
    """Lazy import for main classes."""
    if name == "SelfCorrectionRunner":
        from .correction.runner import SelfCorrectionRunner

        return SelfCorrectionRunner
    if name == "RepairCapabilities":
        from .correction.collaborators import RepairCapabilities

        return RepairCapabilities
    if name == "SelfCorrectionPolicy":
        from .correction.models import SelfCorrectionPolicy

        return SelfCorrectionPolicy
    if name == "classify_failure":
        from .correction.classifier import classify_failure

        return classify_failure
    if name == "Config":
        from .core.config import Config

        return Config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "__version__",
    "SelfCorrectionRunner",
    "RepairCapabilities",
    "SelfCorrectionPolicy",
    "classify_failure",
    "Config",
]
