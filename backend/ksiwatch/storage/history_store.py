"""
Validation history persistence.

A run commit (one snapshot plus one record entry per evaluated control) is
written in a single transaction: either the whole commit is visible or none
of it is. Records are only ever inserted.
"""

import logging
from typing import Callable, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..exceptions import InconsistentState
from ..models import AggregatedSnapshot, DriftEntry, KSIStatus, ValidationEntry, normalize_control_id
from .database import SnapshotRow, ValidationRecordRow, create_session_factory
from .retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)


class HistoryStore:
    """Append-only store for validation records and snapshots."""

    def __init__(self, session_factory: Callable[[], Session], retry_policy: Optional[RetryPolicy] = None):
        self._session_factory = session_factory
        self.retry_policy = retry_policy or RetryPolicy()

    @classmethod
    def from_url(cls, database_url: str, retry_policy: Optional[RetryPolicy] = None) -> "HistoryStore":
        return cls(create_session_factory(database_url), retry_policy)

    def _transaction(self, action: str, work: Callable[[Session], object]):
        def operation():
            with self._session_factory() as session:
                with session.begin():
                    return work(session)

        return call_with_retry(operation, self.retry_policy, action)

    def commit(self, snapshot: AggregatedSnapshot, entries: Sequence[ValidationEntry]) -> None:
        """
        Persist one run commit atomically.

        Raises:
            InconsistentState: If the snapshot does not directly follow the
                latest stored snapshot
            StorageError: If the write fails after retries
        """

        def work(session: Session) -> None:
            latest = session.execute(select(func.max(SnapshotRow.sequence))).scalar_one_or_none() or 0
            if snapshot.sequence != latest + 1:
                raise InconsistentState(
                    f"Snapshot sequence {snapshot.sequence} does not follow stored sequence {latest}"
                )
            session.add(
                SnapshotRow(
                    sequence=snapshot.sequence,
                    run_id=snapshot.run_id,
                    created_at=snapshot.created_at,
                    statuses={k: v.value for k, v in snapshot.statuses.items()},
                    diagnostics=dict(snapshot.diagnostics),
                    stale_controls=sorted(snapshot.stale_controls),
                    drift=[d.model_dump(mode="json") for d in snapshot.drift],
                )
            )
            session.flush()
            for entry in entries:
                session.add(
                    ValidationRecordRow(
                        control_id=entry.control_id,
                        sequence=entry.sequence,
                        run_id=entry.run_id,
                        status=entry.status.value,
                        recorded_at=entry.recorded_at,
                        diagnostic=entry.diagnostic,
                        stale=entry.stale,
                        results=[r.model_dump(mode="json") for r in entry.results],
                    )
                )

        self._transaction("commit", work)
        logger.debug("Committed snapshot %d with %d record entries", snapshot.sequence, len(entries))

    def latest_snapshot(self) -> Optional[AggregatedSnapshot]:
        def work(session: Session) -> Optional[AggregatedSnapshot]:
            row = session.execute(
                select(SnapshotRow).order_by(SnapshotRow.sequence.desc()).limit(1)
            ).scalar_one_or_none()
            return self._snapshot(row) if row is not None else None

        return self._transaction("latest_snapshot", work)

    def snapshots(self) -> List[AggregatedSnapshot]:
        """All snapshots in commit order."""

        def work(session: Session) -> List[AggregatedSnapshot]:
            rows = session.execute(select(SnapshotRow).order_by(SnapshotRow.sequence.asc())).scalars().all()
            return [self._snapshot(r) for r in rows]

        return self._transaction("snapshots", work)

    def get_snapshot(self, sequence: int) -> Optional[AggregatedSnapshot]:
        def work(session: Session) -> Optional[AggregatedSnapshot]:
            row = session.get(SnapshotRow, sequence)
            return self._snapshot(row) if row is not None else None

        return self._transaction("get_snapshot", work)

    def records_for(self, control_id: str) -> List[ValidationEntry]:
        """A control's validation record, oldest entry first."""
        cid = normalize_control_id(control_id)

        def work(session: Session) -> List[ValidationEntry]:
            rows = (
                session.execute(
                    select(ValidationRecordRow)
                    .where(ValidationRecordRow.control_id == cid)
                    .order_by(ValidationRecordRow.sequence.asc())
                )
                .scalars()
                .all()
            )
            return [self._entry(r) for r in rows]

        return self._transaction("records_for", work)

    def last_entry(self, control_id: str) -> Optional[ValidationEntry]:
        cid = normalize_control_id(control_id)

        def work(session: Session) -> Optional[ValidationEntry]:
            row = session.execute(
                select(ValidationRecordRow)
                .where(ValidationRecordRow.control_id == cid)
                .order_by(ValidationRecordRow.sequence.desc())
                .limit(1)
            ).scalar_one_or_none()
            return self._entry(row) if row is not None else None

        return self._transaction("last_entry", work)

    @staticmethod
    def _snapshot(row: SnapshotRow) -> AggregatedSnapshot:
        return AggregatedSnapshot(
            sequence=row.sequence,
            run_id=row.run_id,
            created_at=row.created_at,
            statuses={k: KSIStatus(v) for k, v in (row.statuses or {}).items()},
            diagnostics=dict(row.diagnostics or {}),
            stale_controls=frozenset(row.stale_controls or []),
            drift=tuple(DriftEntry.model_validate(d) for d in (row.drift or [])),
        )

    @staticmethod
    def _entry(row: ValidationRecordRow) -> ValidationEntry:
        return ValidationEntry.model_validate(
            {
                "control_id": row.control_id,
                "sequence": row.sequence,
                "run_id": row.run_id,
                "status": row.status,
                "recorded_at": row.recorded_at,
                "diagnostic": row.diagnostic,
                "stale": bool(row.stale),
                "results": row.results or [],
            }
        )
