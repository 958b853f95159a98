"""
Check executor.

Runs every registered check against a frozen model snapshot and the
evidence linked to each control.

Scheduling:
    - Controls are evaluated in parallel on a bounded thread pool.
    - Checks sharing a control run sequentially in registration order.
    - Each check invocation has a timeout; a timed-out or failing check is
      recorded as UNKNOWN and never affects other checks or controls.

Evidence is read once per control before any check runs, so a storage
failure aborts the run before any result exists.
"""

import logging
import os
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..exceptions import CheckExecutionError, KSIWatchError, RunCancelled, UnknownControl, UnknownEvidence
from ..models import CheckResult, Control, Evidence, KSIStatus, ensure_utc, normalize_control_id, utcnow
from ..storage import EvidenceStore
from ..system_model import ModelSnapshot
from ..utils.logging_security import sanitize_error_message_for_log
from .base import NO_EVIDENCE_DETAIL, Check
from .lattice import combine
from .registry import CheckRegistry

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class _CheckTimedOut(Exception):
    pass


@dataclass(frozen=True)
class ControlOutcome:
    """Combined results of every check that evaluated one control in a run."""

    control_id: str
    status: KSIStatus
    results: Tuple[CheckResult, ...]
    evidence: Tuple[Evidence, ...] = ()


@dataclass
class ExecutionReport:
    """Everything the executor produced for one run."""

    run_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    outcomes: Dict[str, ControlOutcome] = field(default_factory=dict)
    errors: List[KSIWatchError] = field(default_factory=list)

    @property
    def results(self) -> List[CheckResult]:
        """All check results ordered by control id, then registration order."""
        return [r for cid in sorted(self.outcomes) for r in self.outcomes[cid].results]

    def statuses(self) -> Dict[str, KSIStatus]:
        return {cid: o.status for cid, o in sorted(self.outcomes.items())}


class CheckExecutor:
    """
    Executes a check registry against a model snapshot and evidence store.

    Usage:
        executor = CheckExecutor(registry, store, max_workers=4, timeout=10)
        report = executor.execute(model.snapshot())

    A check that outlives its timeout cannot be interrupted: its daemon
    thread keeps running until the check returns, and a check that never
    returns holds its thread for the life of the process. Such threads are
    counted in ``abandoned_invocations`` and logged on every timeout.
    """

    def __init__(
        self,
        registry: CheckRegistry,
        store: EvidenceStore,
        *,
        max_workers: Optional[int] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        """
        Initialize the executor.

        Args:
            registry: Checks to run (frozen on first execution)
            store: Evidence store read for linked evidence
            max_workers: Worker pool bound (None = CPU count)
            timeout: Per-invocation timeout in seconds
        """
        self.registry = registry
        self.store = store
        self.max_workers = max_workers
        self.timeout = timeout
        self._abandoned: List[threading.Thread] = []
        self._abandoned_lock = threading.Lock()
        self._store_lock = threading.Lock()

    @property
    def worker_limit(self) -> int:
        """Upper bound on controls evaluated at once."""
        return self.max_workers or os.cpu_count() or 1

    @property
    def abandoned_invocations(self) -> int:
        """Timed-out check threads that are still running."""
        with self._abandoned_lock:
            self._abandoned = [t for t in self._abandoned if t.is_alive()]
            return len(self._abandoned)

    def plan(self, controls: Optional[Iterable[str]] = None) -> Dict[str, Tuple[Check, ...]]:
        """Map each targeted control to its checks in registration order."""
        scope = {normalize_control_id(c) for c in controls} if controls is not None else None
        plan: Dict[str, List[Check]] = {}
        for check in self.registry.freeze():
            for cid in check.control_ids:
                if scope is not None and cid not in scope:
                    continue
                plan.setdefault(cid, []).append(check)
        return {cid: tuple(checks) for cid, checks in sorted(plan.items())}

    def execute(
        self,
        model: ModelSnapshot,
        *,
        run_id: Optional[str] = None,
        controls: Optional[Iterable[str]] = None,
        now: Optional[datetime] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ExecutionReport:
        """
        Run all planned checks.

        Args:
            model: Frozen model snapshot
            run_id: Run identifier (generated if omitted)
            controls: Restrict the run to these controls
            now: Run timestamp stamped on every result
            cancel_event: Set to stop scheduling further checks

        Returns:
            ExecutionReport with one ControlOutcome per evaluated control and
            any UnknownControl errors surfaced for the caller

        Raises:
            StorageError: If linked evidence cannot be read
            RunCancelled: If cancel_event was set during execution
        """
        run_id = run_id or uuid.uuid4().hex
        run_at = ensure_utc(now) if now else utcnow()
        report = ExecutionReport(run_id=run_id, started_at=run_at)

        work: List[Tuple[Control, Tuple[Check, ...], Tuple[Evidence, ...]]] = []
        for cid, checks in self.plan(controls).items():
            control = model.get(cid)
            if control is None:
                error = UnknownControl(
                    cid, f"Unknown control {cid} targeted by check(s): {', '.join(c.check_id for c in checks)}"
                )
                logger.warning("%s", error)
                report.errors.append(error)
                continue
            work.append((control, checks, tuple(self.store.linked_to(cid))))

        if work:
            workers = min(self.worker_limit, len(work))
            logger.info("Run %s: evaluating %d controls on %d workers", run_id, len(work), workers)
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ksiwatch-check") as pool:
                futures = {
                    pool.submit(self._evaluate_control, control, checks, evidence, run_at, cancel_event): control.id
                    for control, checks, evidence in work
                }
                for future in as_completed(futures):
                    outcome = future.result()
                    report.outcomes[outcome.control_id] = outcome

        if cancel_event is not None and cancel_event.is_set():
            raise RunCancelled(run_id)

        report.finished_at = utcnow()
        return report

    def _evaluate_control(
        self,
        control: Control,
        checks: Sequence[Check],
        evidence: Tuple[Evidence, ...],
        run_at: datetime,
        cancel_event: Optional[threading.Event],
    ) -> ControlOutcome:
        results: List[CheckResult] = []
        linked_ids = {e.id for e in evidence}
        for check in checks:
            if cancel_event is not None and cancel_event.is_set():
                break
            result = self._invoke(check, control, evidence, run_at)
            results.append(self._verify(check, control, evidence, linked_ids, result, run_at))

        status = combine(r.status for r in results) if results else KSIStatus.UNKNOWN
        return ControlOutcome(control_id=control.id, status=status, results=tuple(results), evidence=evidence)

    def _invoke(self, check: Check, control: Control, evidence: Tuple[Evidence, ...], run_at: datetime) -> CheckResult:
        try:
            value = self._call_with_timeout(lambda: check.validate(control, evidence, evaluated_at=run_at))
        except _CheckTimedOut:
            logger.warning(
                "Check %s timed out on %s after %.1fs (%d abandoned check threads still running)",
                check.check_id,
                control.id,
                self.timeout,
                self.abandoned_invocations,
            )
            return self._unknown(check, control, run_at, f"Check timed out after {self.timeout:g}s")
        except Exception as e:
            error = CheckExecutionError(check.check_id, control.id, e)
            logger.warning("%s", sanitize_error_message_for_log(str(error)))
            return self._unknown(check, control, run_at, str(error))

        if not isinstance(value, CheckResult):
            return self._unknown(check, control, run_at, f"Check returned {type(value).__name__}, not a CheckResult")
        return value

    def _call_with_timeout(self, fn):
        box: dict = {}

        def target():
            try:
                box["value"] = fn()
            except BaseException as e:  # re-raised in the calling thread
                box["error"] = e

        # A daemon thread per invocation: a hung check is abandoned without
        # holding a pool worker.
        thread = threading.Thread(target=target, name="ksiwatch-invoke", daemon=True)
        thread.start()
        thread.join(self.timeout)
        if thread.is_alive():
            with self._abandoned_lock:
                self._abandoned.append(thread)
            raise _CheckTimedOut()
        if "error" in box:
            raise box["error"]
        return box["value"]

    def _verify(
        self,
        check: Check,
        control: Control,
        evidence: Tuple[Evidence, ...],
        linked_ids: set,
        result: CheckResult,
        run_at: datetime,
    ) -> CheckResult:
        """Enforce result invariants that custom checks might violate."""
        if result.check_id != check.check_id or result.control_id != control.id:
            return self._unknown(
                check,
                control,
                run_at,
                f"Check reported result for {result.check_id}/{result.control_id}",
            )

        if check.requires_evidence and not evidence and result.status == KSIStatus.TRUE:
            return CheckResult(
                check_id=check.check_id,
                control_id=control.id,
                status=KSIStatus.FALSE,
                evaluated_at=result.evaluated_at,
                message=NO_EVIDENCE_DETAIL,
            )

        if result.evidence_id and result.evidence_id not in linked_ids:
            # Workers share one connection on in-memory SQLite (StaticPool)
            with self._store_lock:
                stored = self.store.exists(result.evidence_id)
            if not stored:
                error = UnknownEvidence(result.evidence_id)
                logger.warning("Check %s on %s: %s", check.check_id, control.id, error)
                return self._unknown(check, control, run_at, str(error))
        return result

    @staticmethod
    def _unknown(check: Check, control: Control, run_at: datetime, message: str) -> CheckResult:
        return CheckResult(
            check_id=check.check_id,
            control_id=control.id,
            status=KSIStatus.UNKNOWN,
            evaluated_at=run_at,
            message=message,
        )
