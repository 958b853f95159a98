"""
Persistence layer for KSIWatch.

Public API:
    - EvidenceStore: content-addressed evidence with control links
    - HistoryStore: append-only validation records and snapshots
    - RetryPolicy: bounded exponential backoff for transient failures
    - create_session_factory: engine + schema + session factory in one call

Quick Start:
    >>> from ksiwatch.storage import EvidenceStore, HistoryStore, create_session_factory
    >>>
    >>> factory = create_session_factory("sqlite:///.ksiwatch/ksiwatch.db")
    >>> evidence = EvidenceStore(factory)
    >>> history = HistoryStore(factory)
"""

from .database import Base, create_db_engine, create_session_factory, init_schema
from .evidence_store import EvidenceStore
from .history_store import HistoryStore
from .retry import NO_RETRY, RetryPolicy, call_with_retry

__all__ = [
    "Base",
    "EvidenceStore",
    "HistoryStore",
    "NO_RETRY",
    "RetryPolicy",
    "call_with_retry",
    "create_db_engine",
    "create_session_factory",
    "init_schema",
]
