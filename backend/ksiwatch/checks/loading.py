"""
Check definition loading.

Check definitions are YAML documents, one per file or several under a
``checks`` key::

    id: ksi-iam-01
    title: Phishing-resistant MFA enforced
    version: "1.2"
    controls: [ia-2, ac-2]
    check:
      method: evidence_attribute
      name: mfa
      equals: enforced

Definitions are validated against the built-in handler registry at load
time so an unknown method aborts startup instead of failing every run.
"""

import copy
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Union

import yaml

from ..exceptions import ConfigurationError
from ..models import Control, Evidence
from .base import Check, Outcome
from .handlers import CHECK_HANDLERS, EVIDENCE_OPTIONAL, methods_in, run_check
from .registry import CheckRegistry

logger = logging.getLogger(__name__)


class RuleCheck(Check):
    """A check backed by a declarative definition and the built-in handlers."""

    def __init__(self, definition: Mapping[str, Any]):
        check_id = definition.get("id")
        if not check_id:
            raise ConfigurationError("Check definition is missing an 'id'")
        rule = definition.get("check")
        if not isinstance(rule, Mapping):
            raise ConfigurationError(f"Check {check_id}: 'check' must be a mapping")
        methods = methods_in(dict(rule))
        unknown = [m for m in methods if m not in CHECK_HANDLERS]
        if unknown:
            raise ConfigurationError(f"Check {check_id}: unknown check method(s): {', '.join(unknown)}")

        controls = definition.get("controls") or []
        if isinstance(controls, str):
            controls = [controls]

        requires_default = not all(m in EVIDENCE_OPTIONAL for m in methods)
        super().__init__(
            str(check_id),
            controls,
            version=str(definition.get("version", "1")),
            requires_evidence=bool(definition.get("requires_evidence", requires_default)),
            order_sensitive=bool(definition.get("order_sensitive", False)),
            title=str(definition.get("title") or ""),
        )
        self.rule = copy.deepcopy(dict(rule))

    def evaluate(self, control: Control, evidence: Sequence[Evidence], now: datetime) -> Outcome:
        return run_check(self.rule, control, evidence, now)


def _definitions_in(data: Any, source: Path) -> List[Mapping[str, Any]]:
    if isinstance(data, Mapping) and "checks" in data and "id" not in data:
        items = data["checks"]
        if not isinstance(items, list):
            raise ConfigurationError(f"{source}: 'checks' must be a list")
        return items
    if isinstance(data, Mapping):
        return [data]
    if isinstance(data, list):
        return data
    raise ConfigurationError(f"{source}: expected a check definition mapping or list")


def load_checks(path: Union[str, Path]) -> List[RuleCheck]:
    """
    Load check definitions from a file or directory (recursive).

    Raises:
        ConfigurationError: If the path is missing, a file is not valid YAML,
            or a definition is malformed
    """
    p = Path(path)
    if p.is_file():
        files = [p]
    elif p.is_dir():
        files = sorted(p.rglob("*.yml")) + sorted(p.rglob("*.yaml"))
    else:
        raise ConfigurationError(f"Checks path not found: {path}")

    checks: List[RuleCheck] = []
    for f in files:
        try:
            data = yaml.safe_load(f.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise ConfigurationError(f"{f}: invalid YAML: {e}") from e
        if data is None:
            continue
        for definition in _definitions_in(data, f):
            if not isinstance(definition, Mapping):
                raise ConfigurationError(f"{f}: check definitions must be mappings")
            checks.append(RuleCheck(definition))

    logger.info("Loaded %d check definitions from %s", len(checks), path)
    return checks


def build_registry(paths: Iterable[Union[str, Path]], extra: Optional[Iterable[Check]] = None) -> CheckRegistry:
    """Create a registry from check definition paths plus programmatic checks."""
    registry = CheckRegistry()
    for path in paths:
        registry.register_all(load_checks(path))
    registry.register_all(extra or ())
    return registry
