"""
System model: the target system's declared control implementations.

Controls are loaded from a declarative YAML document::

    system:
      id: cso-example
      name: Example Cloud Service
    controls:
      - id: AC-2
        title: Account Management
        description: Accounts are provisioned through the IdP.
        status: satisfied
        evidence: []

The model is read-only to checks; declared status and evidence references
change only through ``update_status`` and ``link_evidence``.
"""

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union

import yaml
from pydantic import ValidationError

from .exceptions import ConfigurationError, UnknownControl
from .models import Control, ImplementationStatus, normalize_control_id
from .utils.logging_security import create_audit_log_entry

logger = logging.getLogger(__name__)

ModelSource = Union[str, Path, Mapping[str, Any], List[Any]]


@dataclass(frozen=True)
class ModelSnapshot:
    """Immutable view of the model taken at the start of a validation run."""

    system_id: str
    system_name: str
    controls: Mapping[str, Control] = field(default_factory=dict)

    def get(self, control_id: str) -> Optional[Control]:
        return self.controls.get(normalize_control_id(control_id))

    def __contains__(self, control_id: object) -> bool:
        return isinstance(control_id, str) and normalize_control_id(control_id) in self.controls

    def control_ids(self) -> Tuple[str, ...]:
        return tuple(sorted(self.controls))


class SystemModel:
    """
    In-memory control model.

    Thread-safe: mutations hold an internal lock and replace the frozen
    Control instance, so snapshots handed to running checks never change.
    """

    def __init__(self, controls: List[Control], system_id: str = "ksiwatch-system", system_name: str = ""):
        self.system_id = system_id
        self.system_name = system_name or system_id
        self._lock = threading.Lock()
        self._controls: Dict[str, Control] = {}
        for control in controls:
            if control.id in self._controls:
                raise ConfigurationError(f"Duplicate control id in model: {control.id}")
            self._controls[control.id] = control

    def __len__(self) -> int:
        return len(self._controls)

    def __contains__(self, control_id: object) -> bool:
        return isinstance(control_id, str) and normalize_control_id(control_id) in self._controls

    def __iter__(self) -> Iterator[Control]:
        with self._lock:
            controls = [self._controls[k] for k in sorted(self._controls)]
        return iter(controls)

    def get(self, control_id: str) -> Control:
        """
        Look up a control.

        Raises:
            UnknownControl: If the control id is absent
        """
        cid = normalize_control_id(control_id)
        with self._lock:
            control = self._controls.get(cid)
        if control is None:
            raise UnknownControl(cid)
        return control

    def control_ids(self) -> Tuple[str, ...]:
        with self._lock:
            return tuple(sorted(self._controls))

    def update_status(self, control_id: str, status: Union[ImplementationStatus, str]) -> Control:
        """
        Change a control's declared implementation status.

        Args:
            control_id: Control to update
            status: New declared status

        Returns:
            The updated (new, frozen) Control

        Raises:
            UnknownControl: If the control id is absent
            ConfigurationError: If the status value is not recognised
        """
        new_status = _parse_status(status, control_id)
        cid = normalize_control_id(control_id)
        with self._lock:
            current = self._controls.get(cid)
            if current is None:
                raise UnknownControl(cid)
            updated = current.model_copy(update={"status": new_status})
            self._controls[cid] = updated
        logger.info(
            create_audit_log_entry(
                "update_status",
                "control",
                cid,
                additional_context={"from": current.status.value, "to": new_status.value},
            )
        )
        return updated

    def link_evidence(self, control_id: str, evidence_id: str) -> Control:
        """
        Append an evidence reference to a control (no-op if already present).

        Raises:
            UnknownControl: If the control id is absent
        """
        cid = normalize_control_id(control_id)
        with self._lock:
            current = self._controls.get(cid)
            if current is None:
                raise UnknownControl(cid)
            if evidence_id in current.evidence_refs:
                return current
            updated = current.model_copy(update={"evidence_refs": current.evidence_refs + (evidence_id,)})
            self._controls[cid] = updated
        return updated

    def snapshot(self) -> ModelSnapshot:
        """Freeze the current controls for a validation run or projection."""
        with self._lock:
            controls = dict(self._controls)
        return ModelSnapshot(
            system_id=self.system_id,
            system_name=self.system_name,
            controls=MappingProxyType(controls),
        )


def _parse_status(value: Any, control_id: str) -> ImplementationStatus:
    if isinstance(value, ImplementationStatus):
        return value
    text = str(value).strip().lower().replace("_", "-").replace(" ", "-")
    try:
        return ImplementationStatus(text)
    except ValueError:
        valid = ", ".join(s.value for s in ImplementationStatus)
        raise ConfigurationError(f"Control {control_id}: invalid status {value!r} (expected one of {valid})") from None


def _read_source(source: ModelSource) -> Any:
    if isinstance(source, Path):
        if not source.is_file():
            raise ConfigurationError(f"Control model not found: {source}")
        text = source.read_text(encoding="utf-8")
    elif isinstance(source, str):
        candidate = Path(source)
        if "\n" not in source and candidate.suffix in (".yml", ".yaml", ".json"):
            if not candidate.is_file():
                raise ConfigurationError(f"Control model not found: {source}")
            text = candidate.read_text(encoding="utf-8")
        else:
            text = source
    else:
        return source

    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Control model is not valid YAML: {e}") from e


def load_controls(
    source: ModelSource,
    system_id: Optional[str] = None,
    default_system_id: str = "ksiwatch-system",
    default_system_name: str = "",
) -> SystemModel:
    """
    Parse a declarative control list into a SystemModel.

    Args:
        source: YAML file path, YAML text, a parsed mapping with a
            ``controls`` key, or a bare list of control mappings
        system_id: Override for the system identifier
        default_system_id: Used when the document declares no system id
        default_system_name: Used when the document declares no system name

    Returns:
        SystemModel keyed by normalized control id

    Raises:
        ConfigurationError: If the document is malformed or contains
            duplicate control ids
    """
    data = _read_source(source)

    system: Mapping[str, Any] = {}
    if isinstance(data, list):
        raw_controls = data
    elif isinstance(data, Mapping):
        system = data.get("system") or {}
        if not isinstance(system, Mapping):
            raise ConfigurationError("'system' must be a mapping")
        raw_controls = data.get("controls")
    else:
        raise ConfigurationError("Control model must be a mapping or a list of controls")

    if not isinstance(raw_controls, list):
        raise ConfigurationError("Control model must contain a 'controls' list")

    controls: List[Control] = []
    for index, raw in enumerate(raw_controls):
        if not isinstance(raw, Mapping) or not raw.get("id"):
            raise ConfigurationError(f"Control #{index} is missing an 'id'")
        cid = str(raw["id"])
        evidence = raw.get("evidence") or []
        if not isinstance(evidence, list):
            raise ConfigurationError(f"Control {cid}: 'evidence' must be a list")
        try:
            controls.append(
                Control(
                    id=cid,
                    title=str(raw.get("title") or ""),
                    description=str(raw.get("description") or ""),
                    status=_parse_status(raw.get("status", ImplementationStatus.PLANNED.value), cid),
                    evidence_refs=tuple(str(e) for e in evidence),
                )
            )
        except ValidationError as e:
            raise ConfigurationError(f"Control {cid} is invalid: {e}") from e

    model = SystemModel(
        controls,
        system_id=system_id or str(system.get("id") or default_system_id),
        system_name=str(system.get("name") or default_system_name),
    )
    logger.info("Loaded %d controls for system %s", len(model), model.system_id)
    return model
