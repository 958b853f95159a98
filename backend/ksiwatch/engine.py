"""
Compliance engine.

Wires the system model, evidence store, check registry, executor,
aggregator, notifier and artifact projector into one entry point.

Concurrency:
    Validation runs hold the read side of a RunLock; evidence ingestion and
    model updates hold the write side. Several runs may execute at once but
    never overlap a mutation, and aggregator commits are serialized. Drift
    notifications are delivered after the read side is released.
"""

import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Union

from .aggregator import DEFAULT_FRESHNESS, ValidationAggregator
from .checks import Check, CheckExecutor, CheckRegistry, ExecutionReport, build_registry
from .checks.executor import DEFAULT_TIMEOUT
from .config import Settings
from .exceptions import InconsistentState, KSIWatchError, RunCancelled, RunFailed, StorageError, UnknownControl
from .models import (
    AggregatedSnapshot,
    Evidence,
    ImplementationStatus,
    KSIStatus,
    ValidationEntry,
    normalize_control_id,
)
from .notifications import DriftNotifier, LoggingNotifier, NotificationDispatcher, WebhookNotifier
from .projector import ArtifactSet, ArtifactSigner, ArtifactWriter, project
from .storage import EvidenceStore, HistoryStore, RetryPolicy, create_session_factory
from .system_model import ModelSource, SystemModel, load_controls
from .utils.logging_security import create_audit_log_entry, sanitize_id_for_log

logger = logging.getLogger(__name__)


class RunLock:
    """
    Readers-writer lock.

    Writers are preferred: once a writer is waiting, new readers block
    until it has finished.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class RunHandle:
    """Cancellation handle for one validation run."""

    def __init__(self, run_id: Optional[str] = None):
        self.run_id = run_id or uuid.uuid4().hex
        self.event = threading.Event()

    def cancel(self) -> None:
        """Request cancellation; honoured up to the moment of commit."""
        self.event.set()

    @property
    def cancelled(self) -> bool:
        return self.event.is_set()


@dataclass(frozen=True)
class RunOutcome:
    """Result of a committed validation run."""

    run_id: str
    snapshot: AggregatedSnapshot
    report: ExecutionReport

    @property
    def errors(self) -> List[KSIWatchError]:
        return list(self.report.errors)

    @property
    def statuses(self) -> Dict[str, KSIStatus]:
        return dict(self.snapshot.statuses)


class ComplianceEngine:
    """
    Continuous KSI validation for one system.

    Usage:
        engine = create_engine_from_settings(settings, "system.yml", ["checks/"])
        engine.ingest_evidence(b"...", "ac-2", description="IdP export")
        outcome = engine.run()
        artifacts = engine.project()
    """

    def __init__(
        self,
        model: SystemModel,
        store: EvidenceStore,
        registry: CheckRegistry,
        history: HistoryStore,
        *,
        dispatcher: Optional[NotificationDispatcher] = None,
        freshness_threshold: timedelta = DEFAULT_FRESHNESS,
        check_timeout: float = DEFAULT_TIMEOUT,
        max_workers: Optional[int] = None,
        writer: Optional[ArtifactWriter] = None,
        artifact_dir: Optional[Union[str, Path]] = None,
    ):
        self.model = model
        self.store = store
        self.registry = registry
        self.history = history
        self.dispatcher = dispatcher
        self.executor = CheckExecutor(registry, store, max_workers=max_workers, timeout=check_timeout)
        self.aggregator = ValidationAggregator(
            history, freshness_threshold=freshness_threshold, dispatcher=dispatcher
        )
        self.writer = writer or ArtifactWriter()
        self.artifact_dir = Path(artifact_dir) if artifact_dir else None
        self.lock = RunLock()

    # ── Validation runs ───────────────────────────────────────────────────

    def run(
        self,
        controls: Optional[Iterable[str]] = None,
        handle: Optional[RunHandle] = None,
        now: Optional[datetime] = None,
    ) -> RunOutcome:
        """
        Execute one validation run and commit it.

        Args:
            controls: Restrict the run to these controls; every other
                tracked control keeps its previous status
            handle: Cancellation handle (created if omitted)
            now: Run timestamp (defaults to the current time)

        Returns:
            RunOutcome with the committed snapshot and executor report

        Raises:
            RunCancelled: If the handle was cancelled before commit
            RunFailed: If a storage or consistency failure aborted the run
        """
        handle = handle or RunHandle()
        scope = sorted({normalize_control_id(c) for c in controls}) if controls is not None else None

        with self.lock.read():
            if handle.cancelled:
                raise RunCancelled(handle.run_id)
            model = self.model.snapshot()
            logger.info(
                "Starting run %s (%s)",
                handle.run_id,
                f"{len(scope)} controls" if scope is not None else "all controls",
            )
            try:
                report = self.executor.execute(
                    model, run_id=handle.run_id, controls=scope, now=now, cancel_event=handle.event
                )
                snapshot = self.aggregator.aggregate(
                    report,
                    model=model,
                    scoped=scope is not None,
                    is_cancelled=lambda: handle.cancelled,
                    dispatch=False,
                )
            except RunCancelled:
                logger.info("Run %s cancelled, nothing committed", handle.run_id)
                raise
            except (StorageError, InconsistentState) as e:
                logger.error("Run %s aborted: %s", handle.run_id, e)
                raise RunFailed(handle.run_id, e) from e

        self.aggregator.notify(snapshot)
        if self.artifact_dir is not None:
            self.publish(snapshot=snapshot)
        return RunOutcome(run_id=handle.run_id, snapshot=snapshot, report=report)

    # ── Mutations (exclusive with runs) ───────────────────────────────────

    def ingest_evidence(
        self,
        payload: bytes,
        control_id: str,
        *,
        description: str = "",
        source_uri: str = "",
        collected_at: Optional[datetime] = None,
        attributes: Optional[Dict[str, str]] = None,
    ) -> Evidence:
        """
        Store an evidence payload and link it to a control.

        Raises:
            UnknownControl: If the control is not in the model
            StorageError: If the evidence cannot be persisted
        """
        cid = normalize_control_id(control_id)
        with self.lock.write():
            if cid not in self.model:
                raise UnknownControl(cid)
            evidence = Evidence.from_payload(
                payload,
                [cid],
                description=description,
                source_uri=source_uri,
                collected_at=collected_at,
                attributes=attributes,
            )
            evidence_id = self.store.put(evidence, content=payload)
            self.model.link_evidence(cid, evidence_id)
            stored = self.store.get(evidence_id)

        logger.info(
            create_audit_log_entry(
                "ingest_evidence",
                "evidence",
                evidence_id,
                additional_context={"control": cid, "source": source_uri or "-"},
            )
        )
        return stored

    def link_evidence(self, evidence_id: str, control_id: str) -> None:
        """
        Link already-stored evidence to another control.

        Raises:
            UnknownControl: If the control is not in the model
            UnknownEvidence: If the evidence is not stored
        """
        cid = normalize_control_id(control_id)
        with self.lock.write():
            if cid not in self.model:
                raise UnknownControl(cid)
            self.store.link(evidence_id, cid)
            self.model.link_evidence(cid, evidence_id)
        logger.info("Linked evidence %s to %s", sanitize_id_for_log(evidence_id), sanitize_id_for_log(cid))

    def update_status(self, control_id: str, status: Union[ImplementationStatus, str]) -> None:
        with self.lock.write():
            self.model.update_status(control_id, status)

    # ── Queries ───────────────────────────────────────────────────────────

    @property
    def latest(self) -> Optional[AggregatedSnapshot]:
        return self.aggregator.latest

    def current_status(self, control_id: str) -> Optional[KSIStatus]:
        return self.aggregator.current_status(normalize_control_id(control_id))

    def records_for(self, control_id: str) -> List[ValidationEntry]:
        return self.aggregator.records_for(normalize_control_id(control_id))

    # ── Artifacts ─────────────────────────────────────────────────────────

    def project(self, snapshot: Optional[AggregatedSnapshot] = None) -> ArtifactSet:
        """
        Project a snapshot (the latest by default) against the current model.

        Raises:
            InconsistentState: If no snapshot has been committed yet, or the
                snapshot tracks controls missing from the model
        """
        snapshot = snapshot or self.aggregator.latest
        if snapshot is None:
            raise InconsistentState("No snapshot has been committed yet")
        with self.lock.read():
            return project(snapshot, self.model.snapshot())

    def publish(
        self,
        directory: Optional[Union[str, Path]] = None,
        snapshot: Optional[AggregatedSnapshot] = None,
    ) -> List[Path]:
        """Project and write the artifact set for a snapshot."""
        target = directory or self.artifact_dir
        if target is None:
            raise InconsistentState("No artifact directory configured")
        return self.writer.write(self.project(snapshot), target)


def create_engine_from_settings(
    settings: Settings,
    model_source: ModelSource,
    checks_paths: Sequence[Union[str, Path]] = (),
    *,
    extra_checks: Optional[Iterable[Check]] = None,
    notifiers: Optional[Sequence[DriftNotifier]] = None,
    publish_artifacts: bool = False,
) -> ComplianceEngine:
    """
    Build a ComplianceEngine from application settings.

    Args:
        settings: Application settings
        model_source: Control model (YAML path, text or parsed data)
        checks_paths: YAML check definition files or directories
        extra_checks: Programmatic checks registered after the YAML ones
        notifiers: Drift notifiers (default: log, plus webhook if configured)
        publish_artifacts: Write artifacts to settings.artifact_dir after each run

    Raises:
        ConfigurationError: If the model, checks or signing key are invalid
    """
    model = load_controls(
        model_source,
        default_system_id=settings.system_id,
        default_system_name=settings.system_name,
    )
    registry = build_registry(checks_paths, extra=extra_checks)

    policy = RetryPolicy(
        max_retries=settings.storage_max_retries,
        base_delay=settings.storage_base_delay,
        max_delay=settings.storage_max_delay,
    )
    session_factory = create_session_factory(settings.database_url)

    if notifiers is None:
        notifiers = [LoggingNotifier()]
        if settings.webhook_url:
            notifiers.append(WebhookNotifier(settings.webhook_url))
    dispatcher = NotificationDispatcher(notifiers, max_retries=settings.notification_max_retries)

    store = EvidenceStore(session_factory, policy)
    for cid in model.control_ids():
        for evidence in reversed(store.linked_to(cid)):
            model.link_evidence(cid, evidence.id)

    signer = ArtifactSigner.from_pem_file(settings.signing_key_file) if settings.signing_key_file else None

    engine = ComplianceEngine(
        model,
        store,
        registry,
        HistoryStore(session_factory, policy),
        dispatcher=dispatcher,
        freshness_threshold=timedelta(days=settings.freshness_threshold_days),
        check_timeout=settings.check_timeout_seconds,
        max_workers=settings.worker_count,
        writer=ArtifactWriter(signer),
        artifact_dir=settings.artifact_dir if publish_artifacts else None,
    )
    logger.info(
        "Engine ready for %s: %d controls, %d checks",
        model.system_id,
        len(model),
        len(registry),
    )
    return engine
