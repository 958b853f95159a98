"""Built-in KSI check handlers and dispatch.

Handler Modules:
    - _evidence: evidence_present, evidence_fresh, evidence_source_match,
                 evidence_attribute
    - _control: declared_status
    - _monitoring: monitoring_finding

Example:
-------
    >>> from ksiwatch.checks.handlers import run_check
    >>> outcome = run_check({"method": "evidence_present", "min_count": 2}, control, evidence, now)

"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Dict, Sequence

from ...models import Control, Evidence, KSIStatus
from ..base import Outcome
from ..lattice import combine
from ._control import _check_declared_status
from ._evidence import (
    _check_evidence_attribute,
    _check_evidence_fresh,
    _check_evidence_present,
    _check_evidence_source_match,
)
from ._monitoring import FINDING_STATUS_ATTRIBUTE, _check_monitoring_finding

Handler = Callable[[Control, Sequence[Evidence], dict, datetime], Outcome]

# ── Handler registry ──────────────────────────────────────────────────────

CHECK_HANDLERS: Dict[str, Handler] = {
    # Evidence handlers
    "evidence_present": _check_evidence_present,
    "evidence_fresh": _check_evidence_fresh,
    "evidence_source_match": _check_evidence_source_match,
    "evidence_attribute": _check_evidence_attribute,
    # Control handlers
    "declared_status": _check_declared_status,
    # Monitoring handlers
    "monitoring_finding": _check_monitoring_finding,
}

# Methods that can be answered without any linked evidence
EVIDENCE_OPTIONAL = frozenset({"declared_status"})


def methods_in(check: dict) -> list[str]:
    """All handler method names referenced by a (possibly nested) check definition."""
    if "checks" in check:
        names: list[str] = []
        for sub in check["checks"]:
            names.extend(methods_in(sub))
        return names
    return [check.get("method", "")]


# ── Dispatch functions ────────────────────────────────────────────────────


def run_check(check: dict, control: Control, evidence: Sequence[Evidence], now: datetime) -> Outcome:
    """Dispatch a check definition to its handler.

    Multi-condition definitions (a ``checks`` list) combine their
    sub-outcomes through the status lattice.

    Args:
        check: Check definition with either "method" or "checks".
        control: Control under evaluation.
        evidence: Linked evidence, newest first.
        now: Run timestamp.

    Returns:
        Outcome of the (combined) check.

    """
    if "checks" in check:
        outcomes = [run_check(sub, control, evidence, now) for sub in check["checks"]]
        if not outcomes:
            return Outcome(KSIStatus.UNKNOWN, "empty multi-condition check")
        status = combine(o.status for o in outcomes)
        detail = "; ".join(o.detail for o in outcomes if o.detail)
        evidence_id = next((o.evidence_id for o in outcomes if o.evidence_id), None)
        return Outcome(status, detail, evidence_id)

    return _dispatch_check(check, control, evidence, now)


def _dispatch_check(check: dict, control: Control, evidence: Sequence[Evidence], now: datetime) -> Outcome:
    method = check.get("method", "")
    handler = CHECK_HANDLERS.get(method)
    if handler is None:
        return Outcome(KSIStatus.UNKNOWN, f"Unknown check method: {method}")
    return handler(control, evidence, check, now)


__all__ = [
    "CHECK_HANDLERS",
    "EVIDENCE_OPTIONAL",
    "FINDING_STATUS_ATTRIBUTE",
    "methods_in",
    "run_check",
]
