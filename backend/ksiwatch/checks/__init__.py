"""
Check registry, built-in KSI handlers and the executor.

Public API:
    - Check, FunctionCheck, Outcome: the check abstraction
    - CheckRegistry: ordered registry keyed by check id
    - RuleCheck, load_checks, build_registry: YAML-defined checks
    - CheckExecutor, ExecutionReport, ControlOutcome: running checks
    - combine: the status lattice
"""

from .base import Check, FunctionCheck, Outcome
from .executor import CheckExecutor, ControlOutcome, ExecutionReport
from .handlers import CHECK_HANDLERS, run_check
from .lattice import combine
from .loading import RuleCheck, build_registry, load_checks
from .registry import CheckRegistry

__all__ = [
    "CHECK_HANDLERS",
    "Check",
    "CheckExecutor",
    "CheckRegistry",
    "ControlOutcome",
    "ExecutionReport",
    "FunctionCheck",
    "Outcome",
    "RuleCheck",
    "build_registry",
    "combine",
    "load_checks",
    "run_check",
]
