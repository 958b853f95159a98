"""
Artifact projector.

Renders an AggregatedSnapshot plus the system model into the persistable
artifact set for one revision:

    - system-security-plan: declared implementation of every control
    - validation-status: current KSI status per tracked control
    - findings: open findings for every control that is not TRUE

Projection is a pure function: the same snapshot and model produce
byte-identical artifacts. UUIDs are derived with uuid5 and timestamps
come from the snapshot, never from the wall clock.
"""

import hashlib
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Tuple, Union

from ..exceptions import InconsistentState
from ..models import AggregatedSnapshot
from ..system_model import ModelSnapshot, SystemModel
from ._common import canonical_json
from .findings import build_findings
from .signing import ArtifactSignature, ArtifactSigner
from .ssp import build_ssp
from .validation_status import build_validation_status, parse_validation_status
from .writer import ArtifactWriter

DocumentBuilder = Callable[[AggregatedSnapshot, ModelSnapshot], Dict[str, Any]]

DOCUMENT_BUILDERS: Dict[str, DocumentBuilder] = {
    "system-security-plan": build_ssp,
    "validation-status": build_validation_status,
    "findings": build_findings,
}


@dataclass(frozen=True)
class Artifact:
    """One serialized document of an artifact set."""

    name: str
    system_id: str
    revision: int
    content: bytes
    media_type: str = "application/json"

    @property
    def digest(self) -> str:
        """SHA-256 hex digest of the content."""
        return hashlib.sha256(self.content).hexdigest()

    @property
    def filename(self) -> str:
        return f"{self.name}.json"


@dataclass(frozen=True)
class ArtifactSet:
    """All artifacts for one (system, revision)."""

    system_id: str
    revision: int
    run_id: str
    artifacts: Tuple[Artifact, ...] = field(default_factory=tuple)

    def __getitem__(self, name: str) -> Artifact:
        for artifact in self.artifacts:
            if artifact.name == name:
                return artifact
        raise KeyError(name)

    def __iter__(self):
        return iter(self.artifacts)

    def names(self) -> List[str]:
        return [a.name for a in self.artifacts]


def project(snapshot: AggregatedSnapshot, model: Union[ModelSnapshot, SystemModel]) -> ArtifactSet:
    """
    Render the artifact set for a snapshot.

    Args:
        snapshot: Aggregated snapshot to project
        model: System model (or a frozen snapshot of it)

    Returns:
        ArtifactSet whose revision is the snapshot sequence

    Raises:
        InconsistentState: If the snapshot tracks a control that is not
            in the model
    """
    frozen = model.snapshot() if isinstance(model, SystemModel) else model

    missing = sorted(cid for cid in snapshot.statuses if cid not in frozen.controls)
    if missing:
        raise InconsistentState(
            f"Snapshot {snapshot.sequence} references controls missing from the model: {', '.join(missing)}"
        )

    artifacts = tuple(
        Artifact(
            name=name,
            system_id=frozen.system_id,
            revision=snapshot.sequence,
            content=canonical_json(builder(snapshot, frozen)),
        )
        for name, builder in DOCUMENT_BUILDERS.items()
    )
    return ArtifactSet(
        system_id=frozen.system_id,
        revision=snapshot.sequence,
        run_id=snapshot.run_id,
        artifacts=artifacts,
    )


__all__ = [
    "Artifact",
    "ArtifactSet",
    "ArtifactSignature",
    "ArtifactSigner",
    "ArtifactWriter",
    "DOCUMENT_BUILDERS",
    "canonical_json",
    "parse_validation_status",
    "project",
]
