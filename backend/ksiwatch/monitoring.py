"""
Continuous monitoring feed.

External monitoring tools report findings (a control's observed state at a
point in time). Each finding is stored as synthetic evidence whose payload
is the canonical JSON of the finding, carrying the observed status in the
``finding_status`` attribute, and then triggers a scoped validation run for
the affected controls.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .checks.handlers._monitoring import FINDING_STATUS_ATTRIBUTE
from .engine import ComplianceEngine, RunOutcome
from .models import Evidence, KSIStatus, ensure_utc, normalize_control_id, utcnow
from .projector import canonical_json
from .utils.logging_security import sanitize_id_for_log

logger = logging.getLogger(__name__)


class MonitoringFinding(BaseModel):
    """A single observation from a continuous monitoring source."""

    model_config = ConfigDict(frozen=True)

    control_id: str = Field(..., min_length=1)
    status: KSIStatus
    evidence_uri: str = ""
    observed_at: datetime = Field(default_factory=utcnow)
    detail: str = ""

    @field_validator("control_id")
    @classmethod
    def _normalize(cls, v: str) -> str:
        return normalize_control_id(v)

    @field_validator("status", mode="before")
    @classmethod
    def _parse_status(cls, v):
        return KSIStatus.parse(v)

    @field_validator("observed_at")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    def payload(self) -> bytes:
        """Canonical JSON payload stored as the finding's evidence."""
        return canonical_json({"kind": "monitoring-finding", **self.model_dump(mode="json")})


class MonitoringFeed:
    """
    Turns monitoring findings into evidence and scoped validation runs.

    Usage:
        feed = MonitoringFeed(engine)
        outcome = feed.push(MonitoringFinding(control_id="sc-7", status="false"))
    """

    def __init__(self, engine: ComplianceEngine):
        self.engine = engine

    def record(self, finding: MonitoringFinding) -> Evidence:
        """Store a finding as evidence without triggering a run."""
        return self.engine.ingest_evidence(
            finding.payload(),
            finding.control_id,
            description=finding.detail or f"Monitoring finding: {finding.status.value}",
            source_uri=finding.evidence_uri,
            collected_at=finding.observed_at,
            attributes={FINDING_STATUS_ATTRIBUTE: finding.status.value},
        )

    def push(self, finding: MonitoringFinding, now: Optional[datetime] = None) -> RunOutcome:
        """
        Record one finding and re-validate its control.

        Raises:
            UnknownControl: If the finding names a control not in the model
        """
        return self.push_many([finding], now=now)

    def push_many(self, findings: Iterable[MonitoringFinding], now: Optional[datetime] = None) -> RunOutcome:
        """Record a batch of findings, then run once for all affected controls."""
        controls: List[str] = []
        for finding in findings:
            evidence = self.record(finding)
            logger.info(
                "Monitoring finding for %s recorded as %s (%s)",
                sanitize_id_for_log(finding.control_id),
                evidence.id,
                finding.status.value,
            )
            if finding.control_id not in controls:
                controls.append(finding.control_id)
        return self.engine.run(controls=controls, now=now)
