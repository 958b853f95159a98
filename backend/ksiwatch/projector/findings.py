"""Findings/remediation document: open findings for non-passing controls."""

from typing import Any, Dict, List

from ..models import AggregatedSnapshot, DriftKind, KSIStatus
from ..system_model import ModelSnapshot
from ._common import SCHEMA_VERSION, stable_uuid, timestamp

DOCUMENT_NAME = "findings"

_PRIORITY = {KSIStatus.FALSE: "high", KSIStatus.PARTIAL: "moderate", KSIStatus.UNKNOWN: "moderate"}


def build_findings(snapshot: AggregatedSnapshot, model: ModelSnapshot) -> Dict[str, Any]:
    """Build the findings document.

    Output Structure:
        - findings[]: one open finding per control not currently TRUE
        - resolved[]: controls that moved to TRUE in this snapshot
    """
    findings: List[Dict[str, Any]] = []
    for cid in sorted(snapshot.statuses):
        status = snapshot.statuses[cid]
        if status == KSIStatus.TRUE:
            continue
        control = model.controls[cid]
        findings.append(
            {
                "uuid": stable_uuid(model.system_id, DOCUMENT_NAME, cid, status.value),
                "control_id": cid,
                "title": control.title or cid,
                "status": status.value,
                "stale_evidence": cid in snapshot.stale_controls,
                "description": snapshot.diagnostics.get(cid, ""),
                "remediation": {"state": "open", "priority": _PRIORITY[status]},
            }
        )

    resolved = sorted(
        d.control_id
        for d in snapshot.drift
        if d.kind == DriftKind.STATUS_CHANGED and d.to_status == KSIStatus.TRUE
    )

    return {
        "document": DOCUMENT_NAME,
        "schema_version": SCHEMA_VERSION,
        "uuid": stable_uuid(model.system_id, DOCUMENT_NAME, snapshot.sequence),
        "system_id": model.system_id,
        "revision": snapshot.sequence,
        "generated_at": timestamp(snapshot.created_at),
        "findings": findings,
        "resolved": resolved,
    }
