"""
Check abstraction.

A check is a pure function of (control snapshot, linked evidence) to a
CheckResult. Subclasses implement ``evaluate`` and return an ``Outcome``;
``validate`` wraps it into a CheckResult and enforces that a check needing
evidence never passes without any.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, Optional, Sequence, Tuple

from ..exceptions import ConfigurationError
from ..models import CheckResult, Control, Evidence, KSIStatus, normalize_control_id, utcnow

NO_EVIDENCE_DETAIL = "No evidence linked to control"


@dataclass(frozen=True)
class Outcome:
    """Outcome of evaluating one check on one control."""

    status: KSIStatus
    detail: str = ""
    evidence_id: Optional[str] = None

    @classmethod
    def coerce(cls, value: Any) -> "Outcome":
        """Accept an Outcome, a KSIStatus, a bool or a status string."""
        if isinstance(value, Outcome):
            return value
        if value is None:
            raise TypeError("Check returned None instead of an outcome")
        return cls(status=KSIStatus.parse(value))


class Check(ABC):
    """
    Base class for all checks.

    Attributes:
        check_id: Unique check identifier
        control_ids: Controls this check evaluates (normalized)
        version: Implementation version recorded with results
        requires_evidence: If True, an empty evidence list yields FALSE
        order_sensitive: Declared dependency on registration order among
            checks sharing a control
    """

    def __init__(
        self,
        check_id: str,
        control_ids: Iterable[str],
        *,
        version: str = "1",
        requires_evidence: bool = True,
        order_sensitive: bool = False,
        title: str = "",
    ):
        if not check_id or not str(check_id).strip():
            raise ConfigurationError("Check id must not be blank")
        targets: Tuple[str, ...] = tuple(dict.fromkeys(normalize_control_id(c) for c in control_ids))
        if not targets:
            raise ConfigurationError(f"Check {check_id} declares no target controls")
        self.check_id = str(check_id).strip()
        self.control_ids = targets
        self.version = str(version)
        self.requires_evidence = requires_evidence
        self.order_sensitive = order_sensitive
        self.title = title or self.check_id

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.check_id!r}, controls={list(self.control_ids)!r})"

    @abstractmethod
    def evaluate(self, control: Control, evidence: Sequence[Evidence], now: datetime) -> Outcome:
        """Evaluate the control; must not mutate its inputs."""

    def validate(
        self,
        control: Control,
        evidence: Sequence[Evidence],
        *,
        evaluated_at: Optional[datetime] = None,
    ) -> CheckResult:
        """
        Evaluate one control and wrap the outcome in a CheckResult.

        Args:
            control: Frozen control snapshot
            evidence: Evidence linked to the control, newest first
            evaluated_at: Run timestamp (defaults to now)

        Returns:
            CheckResult for this check and control
        """
        now = evaluated_at or utcnow()
        if self.requires_evidence and not evidence:
            return CheckResult(
                check_id=self.check_id,
                control_id=control.id,
                status=KSIStatus.FALSE,
                evaluated_at=now,
                message=NO_EVIDENCE_DETAIL,
            )
        outcome = Outcome.coerce(self.evaluate(control, tuple(evidence), now))
        return CheckResult(
            check_id=self.check_id,
            control_id=control.id,
            status=outcome.status,
            evidence_id=outcome.evidence_id,
            evaluated_at=now,
            message=outcome.detail or None,
        )


class FunctionCheck(Check):
    """
    Adapter turning a plain callable into a Check.

    The callable receives ``(control, evidence)`` and returns an Outcome,
    a KSIStatus, a bool or a status string.

    Example:
        >>> def mfa_enforced(control, evidence):
        ...     return Outcome(KSIStatus.TRUE, "MFA export present", evidence[0].id)
        >>> check = FunctionCheck("ksi-iam-mfa", ["ia-2"], mfa_enforced)
    """

    def __init__(
        self,
        check_id: str,
        control_ids: Iterable[str],
        func: Callable[[Control, Sequence[Evidence]], Any],
        **kwargs: Any,
    ):
        super().__init__(check_id, control_ids, **kwargs)
        self.func = func

    def evaluate(self, control: Control, evidence: Sequence[Evidence], now: datetime) -> Outcome:
        return Outcome.coerce(self.func(control, evidence))
