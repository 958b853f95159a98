"""Status lattice for combining several results on one control."""

from typing import Iterable

from ..models import KSIStatus


def combine(statuses: Iterable[KSIStatus]) -> KSIStatus:
    """
    Combine the statuses of every check that evaluated one control.

    Any FALSE makes the control FALSE. Otherwise any PARTIAL or UNKNOWN
    makes it PARTIAL. Only all-TRUE yields TRUE.

    Raises:
        ValueError: If no statuses are given
    """
    seen = [KSIStatus.parse(s) for s in statuses]
    if not seen:
        raise ValueError("Cannot combine an empty set of check statuses")
    if KSIStatus.FALSE in seen:
        return KSIStatus.FALSE
    if KSIStatus.PARTIAL in seen or KSIStatus.UNKNOWN in seen:
        return KSIStatus.PARTIAL
    return KSIStatus.TRUE
