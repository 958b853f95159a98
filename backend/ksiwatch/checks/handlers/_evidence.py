"""Evidence-based KSI handlers: presence, freshness and content matching."""

import re
from datetime import datetime, timedelta
from typing import Sequence

from ...models import Control, Evidence, KSIStatus
from ..base import Outcome


def _check_evidence_present(control: Control, evidence: Sequence[Evidence], c: dict, now: datetime) -> Outcome:
    """Require at least ``min_count`` (default 1) evidence items.

    Args:
        control: Control under evaluation.
        evidence: Linked evidence, newest first.
        c: Check definition with optional fields:
            - min_count (int): Minimum number of evidence items.
        now: Run timestamp.

    Returns:
        Outcome TRUE when enough evidence exists, PARTIAL when some but too
        little exists, FALSE when none exists.

    """
    min_count = int(c.get("min_count", 1))
    if not evidence:
        return Outcome(KSIStatus.FALSE, "no evidence linked")
    if len(evidence) < min_count:
        return Outcome(
            KSIStatus.PARTIAL,
            f"{len(evidence)} evidence item(s), expected at least {min_count}",
            evidence[0].id,
        )
    return Outcome(KSIStatus.TRUE, f"{len(evidence)} evidence item(s) linked", evidence[0].id)


def _check_evidence_fresh(control: Control, evidence: Sequence[Evidence], c: dict, now: datetime) -> Outcome:
    """Require the newest evidence to be younger than ``max_age_days``.

    Args:
        control: Control under evaluation.
        evidence: Linked evidence, newest first.
        c: Check definition with fields:
            - max_age_days (int): Maximum age of the newest evidence.
            - stale_status (str, optional): Status to report when stale
              (default "false").
        now: Run timestamp.

    """
    if not evidence:
        return Outcome(KSIStatus.FALSE, "no evidence linked")
    max_age = timedelta(days=int(c.get("max_age_days", 90)))
    newest = evidence[0]
    age = now - newest.collected_at
    if age <= max_age:
        return Outcome(KSIStatus.TRUE, f"newest evidence is {age.days} day(s) old", newest.id)
    stale_status = KSIStatus.parse(c.get("stale_status", "false"))
    return Outcome(stale_status, f"newest evidence is {age.days} day(s) old (limit {max_age.days})", newest.id)


def _check_evidence_source_match(control: Control, evidence: Sequence[Evidence], c: dict, now: datetime) -> Outcome:
    """Require some evidence whose source URI (or description) matches a regex.

    Args:
        c: Check definition with fields:
            - pattern (str): Regular expression.
            - field (str, optional): "source_uri" (default) or "description".

    """
    field = c.get("field", "source_uri")
    if field not in ("source_uri", "description"):
        return Outcome(KSIStatus.UNKNOWN, f"unsupported field: {field}")
    pattern = re.compile(c["pattern"])
    for item in evidence:
        if pattern.search(getattr(item, field)):
            return Outcome(KSIStatus.TRUE, f"{item.id}: {field} matches", item.id)
    return Outcome(KSIStatus.FALSE, f"no evidence {field} matches {c['pattern']!r}")


def _check_evidence_attribute(control: Control, evidence: Sequence[Evidence], c: dict, now: datetime) -> Outcome:
    """Check an attribute on the newest evidence that carries it.

    Args:
        c: Check definition with fields:
            - name (str): Attribute name.
            - equals (str, optional): Expected value; presence only if omitted.

    """
    name = c["name"]
    for item in evidence:
        if name not in item.attributes:
            continue
        actual = item.attributes[name]
        if "equals" in c and actual != str(c["equals"]):
            return Outcome(KSIStatus.FALSE, f"{name}={actual} (expected {c['equals']})", item.id)
        return Outcome(KSIStatus.TRUE, f"{name}={actual}", item.id)
    return Outcome(KSIStatus.FALSE, f"no evidence carries attribute {name!r}")
