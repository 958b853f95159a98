"""
Unit tests for the validation aggregator.

Covers drift computation, staleness override, history, scoped commits,
cancellation and atomic commit failure.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from ksiwatch.aggregator import ValidationAggregator, compute_drift, diff_snapshots
from ksiwatch.checks.executor import ControlOutcome, ExecutionReport
from ksiwatch.exceptions import RunCancelled, StorageError
from ksiwatch.models import AggregatedSnapshot, CheckResult, DriftKind, Evidence, KSIStatus

T0 = datetime(2026, 3, 1, tzinfo=timezone.utc)


def _outcome(cid, status, evidence=(), message=None):
    result = CheckResult(check_id=f"chk-{cid}", control_id=cid, status=status, evaluated_at=T0, message=message)
    return ControlOutcome(control_id=cid, status=status, results=(result,), evidence=tuple(evidence))


def _report(run_id, outcomes, started_at=T0):
    return ExecutionReport(run_id=run_id, started_at=started_at, outcomes={o.control_id: o for o in outcomes})


def _evidence(payload, age_days, now=T0):
    return Evidence.from_payload(payload, ["x"], collected_at=now - timedelta(days=age_days))


@pytest.fixture
def aggregator(history, dispatcher) -> ValidationAggregator:
    return ValidationAggregator(history, freshness_threshold=timedelta(days=365), dispatcher=dispatcher)


@pytest.mark.unit
class TestComputeDrift:
    """Test drift between consecutive snapshots."""

    def _snap(self, statuses, stale=()):
        return AggregatedSnapshot(
            sequence=1, run_id="r1", created_at=T0, statuses=statuses, stale_controls=frozenset(stale)
        )

    def test_first_snapshot_all_newly_tracked(self) -> None:
        drift = compute_drift(None, {"ac-2": KSIStatus.TRUE, "sc-7": KSIStatus.FALSE}, set())
        assert [(d.kind, d.control_id) for d in drift] == [
            (DriftKind.NEWLY_TRACKED, "ac-2"),
            (DriftKind.NEWLY_TRACKED, "sc-7"),
        ]

    def test_status_change(self) -> None:
        drift = compute_drift(self._snap({"ac-2": KSIStatus.TRUE}), {"ac-2": KSIStatus.FALSE}, set())
        assert len(drift) == 1
        assert drift[0].kind == DriftKind.STATUS_CHANGED
        assert (drift[0].from_status, drift[0].to_status) == (KSIStatus.TRUE, KSIStatus.FALSE)

    def test_no_longer_tracked_never_dropped(self) -> None:
        drift = compute_drift(self._snap({"ac-2": KSIStatus.TRUE, "au-6": KSIStatus.PARTIAL}), {"ac-2": KSIStatus.TRUE}, set())
        assert [(d.kind, d.control_id, d.from_status) for d in drift] == [
            (DriftKind.NO_LONGER_TRACKED, "au-6", KSIStatus.PARTIAL)
        ]

    def test_unchanged_is_empty(self) -> None:
        assert compute_drift(self._snap({"ac-2": KSIStatus.TRUE}), {"ac-2": KSIStatus.TRUE}, set()) == ()

    def test_evidence_expired_once(self) -> None:
        drift = compute_drift(self._snap({"sc-7": KSIStatus.TRUE}), {"sc-7": KSIStatus.PARTIAL}, {"sc-7"})
        assert [d.kind for d in drift] == [DriftKind.STATUS_CHANGED, DriftKind.EVIDENCE_EXPIRED]

        again = compute_drift(self._snap({"sc-7": KSIStatus.PARTIAL}, stale={"sc-7"}), {"sc-7": KSIStatus.PARTIAL}, {"sc-7"})
        assert again == ()

    def test_diff_snapshots(self) -> None:
        before = self._snap({"ac-2": KSIStatus.TRUE})
        after = AggregatedSnapshot(sequence=2, run_id="r2", created_at=T0, statuses={"ac-2": KSIStatus.PARTIAL})
        assert diff_snapshots(before, after)[0].kind == DriftKind.STATUS_CHANGED


@pytest.mark.unit
class TestStaleness:
    """Test the evidence staleness override."""

    def test_stale_sole_evidence_forces_partial(self, aggregator) -> None:
        snapshot = aggregator.aggregate(
            _report("r1", [_outcome("sc-7", KSIStatus.TRUE, [_evidence(b"fw", 400)])])
        )
        assert snapshot.statuses["sc-7"] == KSIStatus.PARTIAL
        assert snapshot.diagnostics["sc-7"].startswith("Evidence stale")
        assert "400 days" in snapshot.diagnostics["sc-7"]
        assert "sc-7" in snapshot.stale_controls

    def test_one_fresh_item_prevents_override(self, aggregator) -> None:
        evidence = [_evidence(b"new", 10), _evidence(b"old", 400)]
        snapshot = aggregator.aggregate(_report("r1", [_outcome("sc-7", KSIStatus.TRUE, evidence)]))
        assert snapshot.statuses["sc-7"] == KSIStatus.TRUE
        assert not snapshot.stale_controls

    def test_stale_overrides_false(self, aggregator) -> None:
        snapshot = aggregator.aggregate(
            _report("r1", [_outcome("sc-7", KSIStatus.FALSE, [_evidence(b"fw", 400)])])
        )
        assert snapshot.statuses["sc-7"] == KSIStatus.PARTIAL

    def test_no_evidence_no_override(self, aggregator) -> None:
        snapshot = aggregator.aggregate(_report("r1", [_outcome("ac-2", KSIStatus.FALSE, message="none")]))
        assert snapshot.statuses["ac-2"] == KSIStatus.FALSE
        assert snapshot.diagnostics["ac-2"] == "chk-ac-2: none"

    def test_threshold_configurable(self, history) -> None:
        aggregator = ValidationAggregator(history, freshness_threshold=timedelta(days=30))
        snapshot = aggregator.aggregate(_report("r1", [_outcome("sc-7", KSIStatus.TRUE, [_evidence(b"fw", 45)])]))
        assert snapshot.statuses["sc-7"] == KSIStatus.PARTIAL


@pytest.mark.unit
class TestHistory:
    """Test append-only records and snapshot sequencing."""

    def test_records_appended_every_run(self, aggregator) -> None:
        aggregator.aggregate(_report("r1", [_outcome("ac-2", KSIStatus.TRUE, [_evidence(b"a", 1)])]))
        aggregator.aggregate(
            _report("r2", [_outcome("ac-2", KSIStatus.FALSE, [_evidence(b"a", 1)])], started_at=T0 + timedelta(hours=1))
        )
        records = aggregator.records_for("AC-2")
        assert [(r.sequence, r.run_id, r.status) for r in records] == [
            (1, "r1", KSIStatus.TRUE),
            (2, "r2", KSIStatus.FALSE),
        ]
        assert records[0].recorded_at <= records[1].recorded_at
        assert aggregator.current_status("ac-2") == KSIStatus.FALSE

    def test_record_keeps_check_results(self, aggregator) -> None:
        aggregator.aggregate(_report("r1", [_outcome("ac-2", KSIStatus.PARTIAL, [_evidence(b"a", 1)], "half")]))
        entry = aggregator.records_for("ac-2")[0]
        assert entry.results[0].check_id == "chk-ac-2"
        assert entry.results[0].message == "half"

    def test_created_at_never_goes_backwards(self, aggregator) -> None:
        first = aggregator.aggregate(_report("r1", [_outcome("ac-2", KSIStatus.TRUE)], started_at=T0))
        second = aggregator.aggregate(
            _report("r2", [_outcome("ac-2", KSIStatus.TRUE)], started_at=T0 - timedelta(days=1))
        )
        assert second.sequence == first.sequence + 1
        assert second.created_at >= first.created_at

    def test_latest_survives_restart(self, aggregator, history) -> None:
        committed = aggregator.aggregate(_report("r1", [_outcome("ac-2", KSIStatus.TRUE)]))
        reopened = ValidationAggregator(history)
        assert reopened.latest == committed

    def test_untouched_controls_have_no_record(self, aggregator) -> None:
        aggregator.aggregate(_report("r1", [_outcome("ac-2", KSIStatus.TRUE)]))
        assert aggregator.current_status("sc-7") is None


@pytest.mark.unit
class TestScopedAggregation:
    """Test commits that evaluated only some controls."""

    def test_scoped_carries_forward(self, aggregator, model) -> None:
        aggregator.aggregate(
            _report("r1", [_outcome("ac-2", KSIStatus.TRUE), _outcome("sc-7", KSIStatus.FALSE)])
        )
        snapshot = aggregator.aggregate(
            _report("r2", [_outcome("sc-7", KSIStatus.TRUE)]), model=model.snapshot(), scoped=True
        )
        assert snapshot.statuses == {"ac-2": KSIStatus.TRUE, "sc-7": KSIStatus.TRUE}
        assert [(d.kind, d.control_id) for d in snapshot.drift] == [(DriftKind.STATUS_CHANGED, "sc-7")]
        assert len(aggregator.records_for("ac-2")) == 1

    def test_scoped_drops_controls_removed_from_model(self, aggregator, model) -> None:
        aggregator.aggregate(_report("r1", [_outcome("ac-2", KSIStatus.TRUE), _outcome("zz-9", KSIStatus.TRUE)]))
        snapshot = aggregator.aggregate(
            _report("r2", [_outcome("ac-2", KSIStatus.TRUE)]), model=model.snapshot(), scoped=True
        )
        assert "zz-9" not in snapshot.statuses
        assert [(d.kind, d.control_id) for d in snapshot.drift] == [(DriftKind.NO_LONGER_TRACKED, "zz-9")]

    def test_full_run_reports_no_longer_tracked(self, aggregator) -> None:
        aggregator.aggregate(_report("r1", [_outcome("ac-2", KSIStatus.TRUE), _outcome("au-6", KSIStatus.TRUE)]))
        snapshot = aggregator.aggregate(_report("r2", [_outcome("ac-2", KSIStatus.TRUE)]))
        assert snapshot.drift[0].kind == DriftKind.NO_LONGER_TRACKED


@pytest.mark.unit
class TestCommitSafety:
    """Test cancellation and failed commits."""

    def test_cancelled_before_commit(self, aggregator) -> None:
        with pytest.raises(RunCancelled):
            aggregator.aggregate(_report("r1", [_outcome("ac-2", KSIStatus.TRUE)]), is_cancelled=lambda: True)
        assert aggregator.latest is None
        assert aggregator.records_for("ac-2") == []

    def test_failed_commit_leaves_state_unchanged(self, aggregator, history, notifier) -> None:
        first = aggregator.aggregate(_report("r1", [_outcome("ac-2", KSIStatus.TRUE)]))
        notifier.clear()

        with patch.object(history, "commit", side_effect=StorageError("disk full")):
            with pytest.raises(StorageError):
                aggregator.aggregate(_report("r2", [_outcome("ac-2", KSIStatus.FALSE)]))

        assert aggregator.latest == first
        assert history.latest_snapshot() == first
        assert notifier.events == []

        retried = aggregator.aggregate(_report("r3", [_outcome("ac-2", KSIStatus.FALSE)]))
        assert retried.sequence == 2


@pytest.mark.unit
class TestDriftEvents:
    """Test events emitted after commit."""

    def test_events_for_notified_kinds_only(self, aggregator, notifier) -> None:
        aggregator.aggregate(_report("r1", [_outcome("sc-7", KSIStatus.TRUE, [_evidence(b"fw", 10)])]))
        aggregator.aggregate(_report("r2", [_outcome("sc-7", KSIStatus.TRUE, [_evidence(b"fw", 400)])]))

        kinds = [(e.kind, e.run_id) for e in notifier.events]
        assert kinds == [(DriftKind.NEWLY_TRACKED, "r1"), (DriftKind.STATUS_CHANGED, "r2")]

    def test_event_idempotency_key(self, aggregator, notifier) -> None:
        aggregator.aggregate(_report("r1", [_outcome("ac-2", KSIStatus.TRUE)]))
        aggregator.aggregate(_report("r2", [_outcome("ac-2", KSIStatus.FALSE)]))
        assert notifier.events[-1].idempotency_key == "ac-2:true:false:r2"
