"""Handler reading statuses reported by the continuous-monitoring feed."""

from datetime import datetime
from typing import Sequence

from ...models import Control, Evidence, KSIStatus
from ..base import Outcome

FINDING_STATUS_ATTRIBUTE = "finding_status"


def _check_monitoring_finding(control: Control, evidence: Sequence[Evidence], c: dict, now: datetime) -> Outcome:
    """Report the status of the newest monitoring finding for the control.

    Evidence is newest first, so the first item carrying a finding status
    is the latest observation.
    """
    for item in evidence:
        reported = item.attributes.get(FINDING_STATUS_ATTRIBUTE)
        if reported is None:
            continue
        try:
            status = KSIStatus.parse(reported)
        except ValueError:
            return Outcome(KSIStatus.UNKNOWN, f"{item.id}: unrecognised finding status {reported!r}", item.id)
        return Outcome(status, f"latest finding {item.id} reported {status.value}", item.id)
    return Outcome(KSIStatus.UNKNOWN, "no monitoring findings recorded")
