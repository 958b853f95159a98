"""
KSIWatch: continuous validation of Key Security Indicators.

Evidence is stored content-addressed, checks evaluate each control of the
system model against its linked evidence, every run is folded into an
append-only validation history, and the current state is projected into
deterministic compliance artifacts.

Usage:
    from ksiwatch import Settings, create_engine_from_settings

    engine = create_engine_from_settings(Settings(), "system.yml", ["checks/"])
    engine.ingest_evidence(b"...", "ia-2", description="IdP MFA export")
    outcome = engine.run()
    engine.publish("artifacts/")
"""

__version__ = "0.1.0"

from .aggregator import ValidationAggregator, compute_drift, diff_snapshots
from .checks import Check, CheckExecutor, CheckRegistry, FunctionCheck, Outcome, RuleCheck, build_registry, combine
from .config import Settings, get_settings
from .engine import ComplianceEngine, RunHandle, RunLock, RunOutcome, create_engine_from_settings
from .exceptions import (
    CheckExecutionError,
    ConfigurationError,
    DuplicateCheck,
    InconsistentState,
    IntegrityError,
    KSIWatchError,
    RunCancelled,
    RunFailed,
    StorageError,
    UnknownControl,
    UnknownEvidence,
)
from .models import (
    AggregatedSnapshot,
    CheckResult,
    Control,
    DriftEntry,
    DriftKind,
    Evidence,
    ImplementationStatus,
    KSIStatus,
    ValidationEntry,
)
from .monitoring import MonitoringFeed, MonitoringFinding
from .notifications import DriftEvent, MemoryNotifier, NotificationDispatcher, WebhookNotifier
from .projector import ArtifactSet, ArtifactSigner, ArtifactWriter, parse_validation_status, project
from .storage import EvidenceStore, HistoryStore, RetryPolicy
from .system_model import ModelSnapshot, SystemModel, load_controls

__all__ = [
    "AggregatedSnapshot",
    "ArtifactSet",
    "ArtifactSigner",
    "ArtifactWriter",
    "Check",
    "CheckExecutionError",
    "CheckExecutor",
    "CheckRegistry",
    "CheckResult",
    "ComplianceEngine",
    "ConfigurationError",
    "Control",
    "DriftEntry",
    "DriftEvent",
    "DriftKind",
    "DuplicateCheck",
    "Evidence",
    "EvidenceStore",
    "FunctionCheck",
    "HistoryStore",
    "ImplementationStatus",
    "InconsistentState",
    "IntegrityError",
    "KSIStatus",
    "KSIWatchError",
    "MemoryNotifier",
    "ModelSnapshot",
    "MonitoringFeed",
    "MonitoringFinding",
    "NotificationDispatcher",
    "Outcome",
    "RetryPolicy",
    "RuleCheck",
    "RunCancelled",
    "RunFailed",
    "RunHandle",
    "RunLock",
    "RunOutcome",
    "Settings",
    "StorageError",
    "SystemModel",
    "UnknownControl",
    "UnknownEvidence",
    "ValidationAggregator",
    "ValidationEntry",
    "WebhookNotifier",
    "build_registry",
    "combine",
    "compute_drift",
    "create_engine_from_settings",
    "diff_snapshots",
    "get_settings",
    "load_controls",
    "parse_validation_status",
    "project",
]
