"""
Unit test fixtures and helpers.

Every store fixture uses a private in-memory SQLite database (``sqlite://``
with a StaticPool), so tests never touch the filesystem or each other.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional

import pytest

from ksiwatch.checks import CheckRegistry
from ksiwatch.engine import ComplianceEngine
from ksiwatch.models import Evidence
from ksiwatch.notifications import MemoryNotifier, NotificationDispatcher
from ksiwatch.storage import NO_RETRY, EvidenceStore, HistoryStore, create_session_factory
from ksiwatch.system_model import SystemModel, load_controls

MODEL_YAML = """
system:
  id: cso-test
  name: Test Cloud Service
controls:
  - id: AC-2
    title: Account Management
    description: Accounts are provisioned through the IdP.
    status: satisfied
  - id: SC-7
    title: Boundary Protection
    description: Security groups deny inbound traffic by default.
    status: satisfied
  - id: IA-2
    title: Identification and Authentication
    description: Phishing-resistant MFA for all users.
    status: partial
  - id: AU-6
    title: Audit Review
    description: Weekly log review.
    status: planned
"""


@pytest.fixture
def now() -> datetime:
    """Fixed run timestamp."""
    return datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def session_factory():
    return create_session_factory("sqlite://")


@pytest.fixture
def store(session_factory) -> EvidenceStore:
    return EvidenceStore(session_factory, NO_RETRY)


@pytest.fixture
def history(session_factory) -> HistoryStore:
    return HistoryStore(session_factory, NO_RETRY)


@pytest.fixture
def model() -> SystemModel:
    return load_controls(MODEL_YAML)


@pytest.fixture
def registry() -> CheckRegistry:
    return CheckRegistry()


@pytest.fixture
def notifier() -> MemoryNotifier:
    return MemoryNotifier()


@pytest.fixture
def dispatcher(notifier) -> NotificationDispatcher:
    return NotificationDispatcher([notifier], max_retries=2, sleep=lambda _: None)


@pytest.fixture
def add_evidence(store, model) -> Callable[..., Evidence]:
    """Store a payload linked to controls and return the stored Evidence."""

    def _add(
        payload: bytes,
        controls: Iterable[str],
        collected_at: Optional[datetime] = None,
        **kwargs,
    ) -> Evidence:
        controls = list(controls)
        evidence = Evidence.from_payload(payload, controls, collected_at=collected_at, **kwargs)
        evidence_id = store.put(evidence, content=payload)
        for cid in controls:
            if cid in model:
                model.link_evidence(cid, evidence_id)
        return store.get(evidence_id)

    return _add


@pytest.fixture
def engine(model, store, registry, history, dispatcher) -> ComplianceEngine:
    return ComplianceEngine(
        model,
        store,
        registry,
        history,
        dispatcher=dispatcher,
        freshness_threshold=timedelta(days=365),
        check_timeout=2.0,
        max_workers=4,
    )
