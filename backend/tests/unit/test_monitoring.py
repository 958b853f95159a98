"""
Unit tests for the continuous monitoring feed.
"""

import json
from datetime import timedelta

import pytest
from pydantic import ValidationError

from ksiwatch.checks import RuleCheck
from ksiwatch.exceptions import UnknownControl
from ksiwatch.models import DriftKind, KSIStatus
from ksiwatch.monitoring import MonitoringFeed, MonitoringFinding


@pytest.fixture
def feed(engine, registry) -> MonitoringFeed:
    registry.register(
        RuleCheck({"id": "ksi-mon", "controls": ["sc-7", "ac-2"], "check": {"method": "monitoring_finding"}})
    )
    return MonitoringFeed(engine)


@pytest.mark.unit
class TestMonitoringFinding:
    """Test finding validation."""

    def test_normalizes_fields(self, now) -> None:
        finding = MonitoringFinding(control_id=" SC-7 ", status="FALSE", observed_at=now)
        assert finding.control_id == "sc-7"
        assert finding.status == KSIStatus.FALSE

    def test_rejects_unknown_status(self) -> None:
        with pytest.raises(ValidationError):
            MonitoringFinding(control_id="sc-7", status="maybe")

    def test_payload_is_canonical(self, now) -> None:
        finding = MonitoringFinding(control_id="sc-7", status="false", observed_at=now, detail="port 22 open")
        doc = json.loads(finding.payload())
        assert doc["kind"] == "monitoring-finding"
        assert doc["status"] == "false"
        assert finding.payload() == MonitoringFinding(
            control_id="SC-7", status=KSIStatus.FALSE, observed_at=now, detail="port 22 open"
        ).payload()


@pytest.mark.unit
class TestMonitoringFeed:
    """Test pushing findings through the engine."""

    def test_record_stores_evidence(self, feed, engine, now) -> None:
        evidence = feed.record(MonitoringFinding(control_id="sc-7", status="false", observed_at=now))
        assert evidence.attributes == {"finding_status": "false"}
        assert evidence.description == "Monitoring finding: false"
        assert evidence.collected_at == now
        assert evidence.id in engine.model.get("sc-7").evidence_refs

    def test_push_runs_only_affected_control(self, feed, engine, now) -> None:
        outcome = feed.push(
            MonitoringFinding(control_id="sc-7", status="false", observed_at=now, detail="inbound 0.0.0.0/0"),
            now=now,
        )
        assert outcome.statuses == {"sc-7": KSIStatus.FALSE}
        assert [r.control_id for r in outcome.report.results] == ["sc-7"]

    def test_latest_finding_wins(self, feed, now) -> None:
        feed.push(MonitoringFinding(control_id="sc-7", status="false", observed_at=now - timedelta(hours=2)), now=now)
        outcome = feed.push(MonitoringFinding(control_id="sc-7", status="true", observed_at=now), now=now)
        assert outcome.statuses["sc-7"] == KSIStatus.TRUE
        assert [(d.kind, d.from_status, d.to_status) for d in outcome.snapshot.drift] == [
            (DriftKind.STATUS_CHANGED, KSIStatus.FALSE, KSIStatus.TRUE)
        ]

    def test_push_many_single_run(self, feed, engine, history, now) -> None:
        outcome = feed.push_many(
            [
                MonitoringFinding(control_id="sc-7", status="partial", observed_at=now),
                MonitoringFinding(control_id="ac-2", status="true", observed_at=now),
                MonitoringFinding(control_id="SC-7", status="partial", observed_at=now, detail="again"),
            ],
            now=now,
        )
        assert outcome.statuses == {"ac-2": KSIStatus.TRUE, "sc-7": KSIStatus.PARTIAL}
        assert len(history.snapshots()) == 1

    def test_unknown_control(self, feed, store, now) -> None:
        with pytest.raises(UnknownControl):
            feed.push(MonitoringFinding(control_id="zz-9", status="false", observed_at=now))
        assert store.count() == 0
