"""System security plan document: declared implementation of every control."""

from typing import Any, Dict

from ..models import AggregatedSnapshot
from ..system_model import ModelSnapshot
from ._common import SCHEMA_VERSION, stable_uuid, timestamp

DOCUMENT_NAME = "system-security-plan"


def build_ssp(snapshot: AggregatedSnapshot, model: ModelSnapshot) -> Dict[str, Any]:
    """Build the system security plan.

    Every control in the model is listed with its declared implementation
    status, ordered evidence references and, when tracked, its current
    validation status.
    """
    requirements = []
    for cid in model.control_ids():
        control = model.controls[cid]
        status = snapshot.statuses.get(cid)
        requirements.append(
            {
                "uuid": stable_uuid(model.system_id, DOCUMENT_NAME, snapshot.sequence, cid),
                "control_id": cid,
                "title": control.title,
                "description": control.description,
                "implementation_status": control.status.value,
                "validation_status": status.value if status else None,
                "evidence": list(control.evidence_refs),
            }
        )

    return {
        "document": DOCUMENT_NAME,
        "schema_version": SCHEMA_VERSION,
        "uuid": stable_uuid(model.system_id, DOCUMENT_NAME, snapshot.sequence),
        "system_id": model.system_id,
        "system_name": model.system_name,
        "revision": snapshot.sequence,
        "last_modified": timestamp(snapshot.created_at),
        "control_implementation": {"implemented_requirements": requirements},
    }
