"""
KSIWatch Data Models

Type-safe Pydantic models shared by the evidence store, system model,
check executor, aggregator and projector.

Design Principles:
- Immutable (frozen models) so results can be shared across worker threads
- Timezone-aware timestamps everywhere (naive values are treated as UTC)
- Serializable to JSON for persistence and artifacts
"""

import hashlib
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


_ENHANCEMENT_RE = re.compile(r"\((\d+)\)")


def normalize_control_id(control_id: str) -> str:
    """
    Normalize a control identifier to its canonical lowercase form.

    Examples:
        "AC-2"     -> "ac-2"
        "AC-2(1)"  -> "ac-2.1"
        " sc-7 "   -> "sc-7"
    """
    cid = str(control_id).strip().lower()
    return _ENHANCEMENT_RE.sub(r".\1", cid)


class KSIStatus(str, Enum):
    """
    Status lattice shared by check results and aggregated snapshots.

    Combination rule (see ``ksiwatch.checks.lattice.combine``): any FALSE
    wins; otherwise any PARTIAL or UNKNOWN yields PARTIAL; otherwise TRUE.
    """

    TRUE = "true"
    FALSE = "false"
    PARTIAL = "partial"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> "KSIStatus":
        """
        Parse the loose KSI vocabulary into a lattice value.

        Collectors report statuses as booleans, ``"True"``/``"Partial"``
        strings or pass/fail words; all of them land here.

        Raises:
            ValueError: If the value is not recognised
        """
        if isinstance(value, KSIStatus):
            return value
        if isinstance(value, bool):
            return cls.TRUE if value else cls.FALSE
        text = str(value).strip().lower()
        aliases = {
            "true": cls.TRUE,
            "pass": cls.TRUE,
            "passed": cls.TRUE,
            "yes": cls.TRUE,
            "false": cls.FALSE,
            "fail": cls.FALSE,
            "failed": cls.FALSE,
            "no": cls.FALSE,
            "partial": cls.PARTIAL,
            "unknown": cls.UNKNOWN,
            "error": cls.UNKNOWN,
        }
        if text not in aliases:
            raise ValueError(f"Unrecognised KSI status: {value!r}")
        return aliases[text]


class ImplementationStatus(str, Enum):
    """Declared implementation status of a control."""

    NOT_IMPLEMENTED = "not-implemented"
    PLANNED = "planned"
    PARTIAL = "partial"
    SATISFIED = "satisfied"
    INHERITED = "inherited"


class Control(BaseModel):
    """
    A discrete security requirement declared in the system model.

    Owned by the system model; checks only ever see frozen instances.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Stable control identifier, e.g. ac-2")
    description: str = ""
    title: str = ""
    status: ImplementationStatus = ImplementationStatus.PLANNED
    evidence_refs: Tuple[str, ...] = Field(default=(), description="Ordered evidence references")

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, v: str) -> str:
        cid = normalize_control_id(v)
        if not cid:
            raise ValueError("Control id must not be blank")
        return cid


class Evidence(BaseModel):
    """
    An immutable artifact demonstrating a control's implementation state.

    Evidence ids are content-addressed: ``ev-`` plus the first 16 hex
    characters of the SHA-256 content hash.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    content_hash: str = Field(..., min_length=64, max_length=64)
    source_uri: str = ""
    description: str = ""
    collected_at: datetime
    control_ids: FrozenSet[str] = frozenset()
    attributes: Dict[str, str] = Field(default_factory=dict)

    @field_validator("collected_at")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @field_validator("control_ids", mode="before")
    @classmethod
    def _normalize_controls(cls, v: Iterable[str]) -> FrozenSet[str]:
        return frozenset(normalize_control_id(c) for c in v)

    @staticmethod
    def hash_payload(payload: bytes) -> str:
        """SHA-256 hex digest of an evidence payload."""
        return hashlib.sha256(payload).hexdigest()

    @staticmethod
    def id_for_hash(content_hash: str) -> str:
        """Content-addressed evidence id for a hash."""
        return f"ev-{content_hash[:16]}"

    @classmethod
    def from_payload(
        cls,
        payload: bytes,
        control_ids: Iterable[str],
        description: str = "",
        source_uri: str = "",
        collected_at: Optional[datetime] = None,
        attributes: Optional[Dict[str, str]] = None,
    ) -> "Evidence":
        """
        Build an Evidence record for a raw payload.

        Args:
            payload: Raw evidence bytes
            control_ids: Controls this evidence supports
            description: Free-text description
            source_uri: Where the evidence came from
            collected_at: Collection timestamp (defaults to now)
            attributes: Optional string metadata (e.g. monitoring status)

        Returns:
            Evidence whose id and hash are derived from the payload
        """
        content_hash = cls.hash_payload(payload)
        return cls(
            id=cls.id_for_hash(content_hash),
            content_hash=content_hash,
            source_uri=source_uri,
            description=description,
            collected_at=collected_at or utcnow(),
            control_ids=frozenset(control_ids),
            attributes=dict(attributes or {}),
        )


class CheckResult(BaseModel):
    """Outcome of one check evaluated against one control."""

    model_config = ConfigDict(frozen=True)

    check_id: str
    control_id: str
    status: KSIStatus
    evidence_id: Optional[str] = None
    evaluated_at: datetime = Field(default_factory=utcnow)
    message: Optional[str] = None

    @field_validator("evaluated_at")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    def signature(self) -> Tuple[str, str, str, Optional[str], Optional[str]]:
        """Identity of the result ignoring its evaluation timestamp."""
        return (self.check_id, self.control_id, self.status.value, self.evidence_id, self.message)


class ValidationEntry(BaseModel):
    """
    One immutable entry in a control's validation record.

    ``status`` is the final status for the control in that run, after
    lattice combination and any staleness override.
    """

    model_config = ConfigDict(frozen=True)

    control_id: str
    sequence: int = Field(..., ge=1, description="Snapshot sequence that committed this entry")
    run_id: str
    status: KSIStatus
    recorded_at: datetime
    results: Tuple[CheckResult, ...] = ()
    diagnostic: Optional[str] = None
    stale: bool = False

    @field_validator("recorded_at")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class DriftKind(str, Enum):
    """Kinds of change between two consecutive snapshots."""

    STATUS_CHANGED = "status-changed"
    NEWLY_TRACKED = "newly-tracked"
    NO_LONGER_TRACKED = "no-longer-tracked"
    EVIDENCE_EXPIRED = "evidence-expired"


class DriftEntry(BaseModel):
    """A single drift delta entry."""

    model_config = ConfigDict(frozen=True)

    kind: DriftKind
    control_id: str
    from_status: Optional[KSIStatus] = None
    to_status: Optional[KSIStatus] = None


class AggregatedSnapshot(BaseModel):
    """
    Point-in-time view of every tracked control's current status.

    Drift is always relative to the snapshot with ``sequence - 1``.
    """

    model_config = ConfigDict(frozen=True)

    sequence: int = Field(..., ge=1)
    run_id: str
    created_at: datetime
    statuses: Dict[str, KSIStatus] = Field(default_factory=dict)
    diagnostics: Dict[str, str] = Field(default_factory=dict)
    stale_controls: FrozenSet[str] = frozenset()
    drift: Tuple[DriftEntry, ...] = ()

    @field_validator("created_at")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    def status_of(self, control_id: str) -> Optional[KSIStatus]:
        return self.statuses.get(normalize_control_id(control_id))

    @property
    def newly_failing(self) -> Tuple[str, ...]:
        """Controls that moved to FALSE (or appeared as FALSE) in this snapshot."""
        return tuple(
            d.control_id
            for d in self.drift
            if d.kind in (DriftKind.STATUS_CHANGED, DriftKind.NEWLY_TRACKED) and d.to_status == KSIStatus.FALSE
        )

    @property
    def expired_evidence(self) -> Tuple[str, ...]:
        """Controls whose supporting evidence went stale in this snapshot."""
        return tuple(d.control_id for d in self.drift if d.kind == DriftKind.EVIDENCE_EXPIRED)

    def count(self, status: KSIStatus) -> int:
        return sum(1 for s in self.statuses.values() if s == status)
