"""Validation-status document: current status of every tracked control."""

import json
from typing import Any, Dict

from ..exceptions import InconsistentState
from ..models import AggregatedSnapshot, KSIStatus
from ..system_model import ModelSnapshot
from ._common import SCHEMA_VERSION, stable_uuid, timestamp

DOCUMENT_NAME = "validation-status"


def build_validation_status(snapshot: AggregatedSnapshot, model: ModelSnapshot) -> Dict[str, Any]:
    """Build the validation-status document for a snapshot.

    Output Structure:
        - summary: counts per status plus stale-evidence count
        - controls[]: control_id, status, stale, diagnostic (if any)
        - drift[]: drift entries relative to the previous snapshot
    """
    controls = []
    for cid in sorted(snapshot.statuses):
        entry: Dict[str, Any] = {
            "control_id": cid,
            "status": snapshot.statuses[cid].value,
            "stale": cid in snapshot.stale_controls,
        }
        if cid in snapshot.diagnostics:
            entry["diagnostic"] = snapshot.diagnostics[cid]
        controls.append(entry)

    return {
        "document": DOCUMENT_NAME,
        "schema_version": SCHEMA_VERSION,
        "uuid": stable_uuid(model.system_id, DOCUMENT_NAME, snapshot.sequence),
        "system_id": model.system_id,
        "revision": snapshot.sequence,
        "run_id": snapshot.run_id,
        "generated_at": timestamp(snapshot.created_at),
        "summary": {
            "total": len(snapshot.statuses),
            "true": snapshot.count(KSIStatus.TRUE),
            "false": snapshot.count(KSIStatus.FALSE),
            "partial": snapshot.count(KSIStatus.PARTIAL),
            "unknown": snapshot.count(KSIStatus.UNKNOWN),
            "stale": len(snapshot.stale_controls),
        },
        "controls": controls,
        "drift": [
            {
                "kind": d.kind.value,
                "control_id": d.control_id,
                "from": d.from_status.value if d.from_status else None,
                "to": d.to_status.value if d.to_status else None,
            }
            for d in snapshot.drift
        ],
    }


def parse_validation_status(content: bytes) -> Dict[str, KSIStatus]:
    """
    Read back (control_id -> status) from a validation-status artifact.

    Raises:
        InconsistentState: If the content is not a validation-status document
    """
    try:
        document = json.loads(content.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise InconsistentState(f"Artifact is not valid JSON: {e}") from e
    if not isinstance(document, dict) or document.get("document") != DOCUMENT_NAME:
        raise InconsistentState("Artifact is not a validation-status document")
    return {c["control_id"]: KSIStatus(c["status"]) for c in document.get("controls", [])}
