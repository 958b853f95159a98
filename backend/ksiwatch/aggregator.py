"""
Validation Aggregator

Folds one run's per-control outcomes into the append-only validation
history and produces the next AggregatedSnapshot.

Responsibilities:
    - Evidence staleness override (stale evidence forces PARTIAL)
    - Drift against the immediately preceding snapshot
    - Serialized, atomic commits (runs are totally ordered by commit)
    - Drift event emission after a successful commit
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set, Tuple

from .checks.executor import ControlOutcome, ExecutionReport
from .exceptions import RunCancelled
from .models import (
    AggregatedSnapshot,
    DriftEntry,
    DriftKind,
    KSIStatus,
    ValidationEntry,
    ensure_utc,
    normalize_control_id,
)
from .notifications import DriftEvent, NotificationDispatcher
from .storage import HistoryStore
from .system_model import ModelSnapshot

logger = logging.getLogger(__name__)

DEFAULT_FRESHNESS = timedelta(days=365)

_KIND_ORDER = {
    DriftKind.STATUS_CHANGED: 0,
    DriftKind.NEWLY_TRACKED: 1,
    DriftKind.NO_LONGER_TRACKED: 2,
    DriftKind.EVIDENCE_EXPIRED: 3,
}


def compute_drift(
    previous: Optional[AggregatedSnapshot],
    statuses: Dict[str, KSIStatus],
    stale_controls: Set[str],
) -> Tuple[DriftEntry, ...]:
    """
    Drift between the previous snapshot and a new set of statuses.

    Controls present in both with different statuses are STATUS_CHANGED,
    new controls are NEWLY_TRACKED, vanished controls are NO_LONGER_TRACKED.
    Controls whose evidence became stale are additionally EVIDENCE_EXPIRED.
    """
    before = previous.statuses if previous else {}
    stale_before = previous.stale_controls if previous else frozenset()
    drift: List[DriftEntry] = []

    for cid, status in statuses.items():
        if cid not in before:
            drift.append(DriftEntry(kind=DriftKind.NEWLY_TRACKED, control_id=cid, to_status=status))
        elif before[cid] != status:
            drift.append(
                DriftEntry(kind=DriftKind.STATUS_CHANGED, control_id=cid, from_status=before[cid], to_status=status)
            )
        if cid in stale_controls and cid not in stale_before:
            drift.append(DriftEntry(kind=DriftKind.EVIDENCE_EXPIRED, control_id=cid, to_status=status))

    for cid, status in before.items():
        if cid not in statuses:
            drift.append(DriftEntry(kind=DriftKind.NO_LONGER_TRACKED, control_id=cid, from_status=status))

    return tuple(sorted(drift, key=lambda d: (d.control_id, _KIND_ORDER[d.kind])))


def diff_snapshots(before: Optional[AggregatedSnapshot], after: AggregatedSnapshot) -> Tuple[DriftEntry, ...]:
    """Drift between any two snapshots (for history browsing)."""
    return compute_drift(before, dict(after.statuses), set(after.stale_controls))


class ValidationAggregator:
    """
    Maintains validation history and the current snapshot.

    Usage:
        aggregator = ValidationAggregator(history, freshness_threshold=timedelta(days=365))
        snapshot = aggregator.aggregate(report)
    """

    def __init__(
        self,
        history: HistoryStore,
        *,
        freshness_threshold: timedelta = DEFAULT_FRESHNESS,
        dispatcher: Optional[NotificationDispatcher] = None,
    ):
        """
        Initialize the aggregator.

        Args:
            history: Durable history store (source of truth for snapshots)
            freshness_threshold: Evidence older than this is stale
            dispatcher: Receives one event per drift entry after each commit
        """
        self.history = history
        self.freshness_threshold = freshness_threshold
        self.dispatcher = dispatcher
        self._commit_lock = threading.Lock()
        self._latest: Optional[AggregatedSnapshot] = history.latest_snapshot()

    @property
    def latest(self) -> Optional[AggregatedSnapshot]:
        return self._latest

    def current_status(self, control_id: str) -> Optional[KSIStatus]:
        """Status of the control's most recent record entry."""
        entry = self.history.last_entry(control_id)
        return entry.status if entry else None

    def records_for(self, control_id: str) -> List[ValidationEntry]:
        return self.history.records_for(control_id)

    def resolve(self, outcome: ControlOutcome, now: datetime) -> Tuple[KSIStatus, Optional[str], bool]:
        """
        Final status for one control: lattice result or staleness override.

        Returns:
            (status, diagnostic, stale)
        """
        evidence = outcome.evidence
        if evidence:
            cutoff = ensure_utc(now) - self.freshness_threshold
            newest = max(evidence, key=lambda e: e.collected_at)
            if newest.collected_at < cutoff:
                age_days = (ensure_utc(now) - newest.collected_at).days
                diagnostic = (
                    f"Evidence stale: newest evidence {newest.id} is {age_days} days old "
                    f"(freshness threshold {self.freshness_threshold.days} days)"
                )
                return KSIStatus.PARTIAL, diagnostic, True

        messages = [f"{r.check_id}: {r.message}" for r in outcome.results if r.message and r.status != KSIStatus.TRUE]
        return outcome.status, "; ".join(messages) or None, False

    def aggregate(
        self,
        report: ExecutionReport,
        *,
        model: Optional[ModelSnapshot] = None,
        scoped: bool = False,
        is_cancelled: Optional[Callable[[], bool]] = None,
        dispatch: bool = True,
    ) -> AggregatedSnapshot:
        """
        Commit one run and return the new snapshot.

        Args:
            report: Executor report for the run
            model: Model snapshot the run evaluated; carried-forward controls
                missing from it are dropped (and surface as NO_LONGER_TRACKED)
            scoped: True when the run evaluated a subset of controls; the
                other controls keep their previous status
            is_cancelled: Checked under the commit lock right before writing
            dispatch: Deliver drift events before returning; callers holding
                a lock pass False and call ``notify`` once they release it

        Returns:
            The committed AggregatedSnapshot

        Raises:
            RunCancelled: If the run was cancelled before commit
            StorageError: If the commit could not be persisted (history and
                the current snapshot are left unchanged)
        """
        with self._commit_lock:
            if is_cancelled is not None and is_cancelled():
                raise RunCancelled(report.run_id)

            previous = self._latest
            sequence = (previous.sequence if previous else 0) + 1
            created_at = ensure_utc(report.started_at)
            if previous and created_at < previous.created_at:
                created_at = previous.created_at

            statuses: Dict[str, KSIStatus] = {}
            diagnostics: Dict[str, str] = {}
            stale: Set[str] = set()
            entries: List[ValidationEntry] = []

            for cid in sorted(report.outcomes):
                outcome = report.outcomes[cid]
                status, diagnostic, is_stale = self.resolve(outcome, report.started_at)
                statuses[cid] = status
                if diagnostic:
                    diagnostics[cid] = diagnostic
                if is_stale:
                    stale.add(cid)
                entries.append(
                    ValidationEntry(
                        control_id=cid,
                        sequence=sequence,
                        run_id=report.run_id,
                        status=status,
                        recorded_at=created_at,
                        results=outcome.results,
                        diagnostic=diagnostic,
                        stale=is_stale,
                    )
                )

            if scoped and previous is not None:
                for cid, status in previous.statuses.items():
                    if cid in statuses:
                        continue
                    if model is not None and normalize_control_id(cid) not in model:
                        continue
                    statuses[cid] = status
                    if cid in previous.diagnostics:
                        diagnostics[cid] = previous.diagnostics[cid]
                    if cid in previous.stale_controls:
                        stale.add(cid)

            snapshot = AggregatedSnapshot(
                sequence=sequence,
                run_id=report.run_id,
                created_at=created_at,
                statuses=dict(sorted(statuses.items())),
                diagnostics=dict(sorted(diagnostics.items())),
                stale_controls=frozenset(stale),
                drift=compute_drift(previous, statuses, stale),
            )

            self.history.commit(snapshot, entries)
            self._latest = snapshot

        logger.info(
            "Committed run %s as snapshot %d: %d controls, %d drift entries",
            report.run_id,
            snapshot.sequence,
            len(snapshot.statuses),
            len(snapshot.drift),
        )
        if dispatch:
            self.notify(snapshot)
        return snapshot

    def notify(self, snapshot: AggregatedSnapshot) -> int:
        """Deliver the drift events of a committed snapshot."""
        if self.dispatcher is None:
            return 0
        return self.dispatcher.dispatch(DriftEvent.from_snapshot(snapshot))
