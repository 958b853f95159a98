"""Handlers evaluating the control's declared implementation state."""

from datetime import datetime
from typing import Sequence

from ...models import Control, Evidence, ImplementationStatus, KSIStatus
from ..base import Outcome

_DEFAULT_EXPECTED = (ImplementationStatus.SATISFIED.value, ImplementationStatus.INHERITED.value)
_IN_PROGRESS = (ImplementationStatus.PARTIAL, ImplementationStatus.PLANNED)


def _check_declared_status(control: Control, evidence: Sequence[Evidence], c: dict, now: datetime) -> Outcome:
    """Compare the declared implementation status with the expected set.

    Args:
        c: Check definition with optional fields:
            - expected (list[str]): Accepted statuses (default satisfied,
              inherited).

    Returns:
        TRUE for an expected status, PARTIAL while planned or partially
        implemented, FALSE otherwise.

    """
    expected = {str(s).lower() for s in c.get("expected", _DEFAULT_EXPECTED)}
    declared = control.status
    if declared.value in expected:
        return Outcome(KSIStatus.TRUE, f"declared {declared.value}")
    if declared in _IN_PROGRESS:
        return Outcome(KSIStatus.PARTIAL, f"declared {declared.value}")
    return Outcome(KSIStatus.FALSE, f"declared {declared.value}")
