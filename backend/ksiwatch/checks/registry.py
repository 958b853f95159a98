"""
Check registry.

Checks are registered once at startup, keyed by id. The first execution
freezes the registry into a fixed, ordered tuple; later registration is a
configuration error.
"""

import logging
import threading
from typing import Any, Callable, Dict, Iterable, Iterator, Optional, Sequence, Tuple

from ..exceptions import ConfigurationError, DuplicateCheck
from ..models import Control, Evidence, normalize_control_id
from .base import Check, FunctionCheck

logger = logging.getLogger(__name__)


class CheckRegistry:
    """Ordered registry of checks keyed by check id."""

    def __init__(self, checks: Optional[Iterable[Check]] = None):
        self._checks: Dict[str, Check] = {}
        self._frozen: Optional[Tuple[Check, ...]] = None
        self._lock = threading.Lock()
        for check in checks or ():
            self.register(check)

    def __len__(self) -> int:
        return len(self._checks)

    def __contains__(self, check_id: object) -> bool:
        return check_id in self._checks

    def __iter__(self) -> Iterator[Check]:
        return iter(self.checks())

    def register(self, check: Check) -> Check:
        """
        Register a check.

        Raises:
            DuplicateCheck: If the check id is already registered
            ConfigurationError: If the registry has already been frozen
        """
        with self._lock:
            if self._frozen is not None:
                raise ConfigurationError(f"Registry is frozen; cannot register {check.check_id}")
            if check.check_id in self._checks:
                raise DuplicateCheck(check.check_id)
            self._checks[check.check_id] = check
        logger.debug("Registered check %s for %s", check.check_id, ", ".join(check.control_ids))
        return check

    def register_all(self, checks: Iterable[Check]) -> None:
        for check in checks:
            self.register(check)

    def check(
        self, check_id: str, controls: Sequence[str], **kwargs: Any
    ) -> Callable[[Callable[[Control, Sequence[Evidence]], Any]], Callable[[Control, Sequence[Evidence]], Any]]:
        """
        Decorator registering a plain function as a check.

        Example:
            >>> registry = CheckRegistry()
            >>> @registry.check("ac2-check", controls=["ac-2"])
            ... def ac2_check(control, evidence):
            ...     return KSIStatus.TRUE
        """

        def decorator(func):
            self.register(FunctionCheck(check_id, controls, func, **kwargs))
            return func

        return decorator

    def freeze(self) -> Tuple[Check, ...]:
        """Resolve the registry into its fixed execution order."""
        with self._lock:
            if self._frozen is None:
                self._frozen = tuple(self._checks.values())
                logger.info("Check registry frozen with %d checks", len(self._frozen))
            return self._frozen

    @property
    def frozen(self) -> bool:
        return self._frozen is not None

    def checks(self) -> Tuple[Check, ...]:
        """Registered checks in registration order."""
        with self._lock:
            return self._frozen if self._frozen is not None else tuple(self._checks.values())

    def get(self, check_id: str) -> Check:
        try:
            return self._checks[check_id]
        except KeyError:
            raise ConfigurationError(f"Unknown check: {check_id}") from None

    def for_control(self, control_id: str) -> Tuple[Check, ...]:
        """Checks targeting a control, in registration order."""
        cid = normalize_control_id(control_id)
        return tuple(c for c in self.checks() if cid in c.control_ids)

    def control_ids(self) -> Tuple[str, ...]:
        """Every control id targeted by at least one check."""
        return tuple(sorted({cid for c in self.checks() for cid in c.control_ids}))
