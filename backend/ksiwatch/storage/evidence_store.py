"""
Content-addressed evidence store.

Evidence is keyed by the SHA-256 hash of its payload. Putting the same
content twice returns the existing id; any new control links supplied with
the duplicate are recorded, the evidence row itself is never rewritten.

Example:
    >>> store = EvidenceStore.from_url("sqlite://")
    >>> ev = Evidence.from_payload(b"mfa enforced", ["ia-2"], description="IdP export")
    >>> evidence_id = store.put(ev, content=b"mfa enforced")
    >>> [e.id for e in store.linked_to("ia-2")] == [evidence_id]
    True
"""

import logging
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..exceptions import IntegrityError, UnknownEvidence
from ..models import Evidence, normalize_control_id
from ..utils.logging_security import sanitize_id_for_log, sanitize_uri_for_log
from .database import EvidenceLinkRow, EvidenceRow, create_session_factory
from .retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)


class EvidenceStore:
    """
    SQLAlchemy-backed evidence store.

    Every public operation runs in exactly one transaction wrapped in the
    retry policy, so a failed write leaves neither the evidence row nor any
    of its links behind.
    """

    def __init__(self, session_factory: Callable[[], Session], retry_policy: Optional[RetryPolicy] = None):
        """
        Initialize the evidence store.

        Args:
            session_factory: Callable returning a new SQLAlchemy session
            retry_policy: Backoff policy for transient database failures
        """
        self._session_factory = session_factory
        self.retry_policy = retry_policy or RetryPolicy()

    @classmethod
    def from_url(cls, database_url: str, retry_policy: Optional[RetryPolicy] = None) -> "EvidenceStore":
        return cls(create_session_factory(database_url), retry_policy)

    def _transaction(self, action: str, work: Callable[[Session], object]):
        def operation():
            with self._session_factory() as session:
                with session.begin():
                    return work(session)

        return call_with_retry(operation, self.retry_policy, action)

    # ── Writes ────────────────────────────────────────────────────────────

    def put(self, evidence: Evidence, content: Optional[bytes] = None) -> str:
        """
        Store evidence (idempotent by content hash).

        Args:
            evidence: Evidence metadata
            content: Optional raw payload; verified against the content hash

        Returns:
            The stored evidence id (the existing id for duplicate content)

        Raises:
            IntegrityError: If the payload does not match the content hash,
                or the id is already taken by different content
            StorageError: If the write fails after retries
        """
        if content is not None and Evidence.hash_payload(content) != evidence.content_hash:
            raise IntegrityError(f"Payload does not match content hash for evidence {evidence.id}")

        def work(session: Session) -> str:
            existing = session.execute(
                select(EvidenceRow).where(EvidenceRow.content_hash == evidence.content_hash)
            ).scalar_one_or_none()

            if existing is not None:
                self._add_links(session, existing.id, evidence.control_ids)
                return existing.id

            clash = session.get(EvidenceRow, evidence.id)
            if clash is not None:
                raise IntegrityError(f"Evidence id {evidence.id} already stored with different content")

            session.add(
                EvidenceRow(
                    id=evidence.id,
                    content_hash=evidence.content_hash,
                    source_uri=evidence.source_uri,
                    description=evidence.description,
                    collected_at=evidence.collected_at,
                    attributes=dict(evidence.attributes),
                    content=content,
                )
            )
            session.flush()
            self._add_links(session, evidence.id, evidence.control_ids)
            return evidence.id

        evidence_id = self._transaction("put", work)
        if evidence_id != evidence.id:
            logger.debug("Duplicate evidence content, reusing %s", sanitize_id_for_log(evidence_id))
        else:
            logger.info(
                "Stored evidence %s from %s",
                sanitize_id_for_log(evidence_id),
                sanitize_uri_for_log(evidence.source_uri),
            )
        return evidence_id

    def link(self, evidence_id: str, control_id: str) -> None:
        """
        Link existing evidence to a control.

        Raises:
            UnknownEvidence: If the evidence id is not stored
        """

        def work(session: Session) -> None:
            if session.get(EvidenceRow, evidence_id) is None:
                raise UnknownEvidence(evidence_id)
            self._add_links(session, evidence_id, [control_id])

        self._transaction("link", work)

    @staticmethod
    def _add_links(session: Session, evidence_id: str, control_ids: Iterable[str]) -> None:
        for control_id in sorted({normalize_control_id(c) for c in control_ids}):
            if session.get(EvidenceLinkRow, (evidence_id, control_id)) is None:
                session.add(EvidenceLinkRow(evidence_id=evidence_id, control_id=control_id))

    # ── Reads ─────────────────────────────────────────────────────────────

    def get(self, evidence_id: str) -> Evidence:
        """
        Fetch evidence by id.

        Raises:
            UnknownEvidence: If no evidence has this id
        """

        def work(session: Session) -> Evidence:
            row = session.get(EvidenceRow, evidence_id)
            if row is None:
                raise UnknownEvidence(evidence_id)
            return self._to_model(row, self._links_for(session, [row.id]).get(row.id, []))

        return self._transaction("get", work)

    def exists(self, evidence_id: str) -> bool:
        def work(session: Session) -> bool:
            return session.get(EvidenceRow, evidence_id) is not None

        return self._transaction("exists", work)

    def find_by_hash(self, content_hash: str) -> Optional[Evidence]:
        def work(session: Session) -> Optional[Evidence]:
            row = session.execute(
                select(EvidenceRow).where(EvidenceRow.content_hash == content_hash)
            ).scalar_one_or_none()
            if row is None:
                return None
            return self._to_model(row, self._links_for(session, [row.id]).get(row.id, []))

        return self._transaction("find_by_hash", work)

    def linked_to(self, control_id: str) -> List[Evidence]:
        """
        Evidence linked to a control, newest collection timestamp first.

        Ties are broken by evidence id so the order is stable across calls.
        """
        cid = normalize_control_id(control_id)

        def work(session: Session) -> List[Evidence]:
            rows = (
                session.execute(
                    select(EvidenceRow)
                    .join(EvidenceLinkRow, EvidenceLinkRow.evidence_id == EvidenceRow.id)
                    .where(EvidenceLinkRow.control_id == cid)
                    .order_by(EvidenceRow.collected_at.desc(), EvidenceRow.id.asc())
                )
                .scalars()
                .all()
            )
            links = self._links_for(session, [r.id for r in rows])
            return [self._to_model(r, links.get(r.id, [])) for r in rows]

        return self._transaction("linked_to", work)

    def read_content(self, evidence_id: str) -> Optional[bytes]:
        """Raw payload of stored evidence, or None if stored without content."""

        def work(session: Session) -> Optional[bytes]:
            row = session.get(EvidenceRow, evidence_id)
            if row is None:
                raise UnknownEvidence(evidence_id)
            return row.content

        return self._transaction("read_content", work)

    def count(self) -> int:
        def work(session: Session) -> int:
            return session.execute(select(func.count()).select_from(EvidenceRow)).scalar_one()

        return self._transaction("count", work)

    @staticmethod
    def _links_for(session: Session, evidence_ids: List[str]) -> Dict[str, List[str]]:
        if not evidence_ids:
            return {}
        links: Dict[str, List[str]] = {}
        rows = session.execute(
            select(EvidenceLinkRow.evidence_id, EvidenceLinkRow.control_id).where(
                EvidenceLinkRow.evidence_id.in_(evidence_ids)
            )
        ).all()
        for evidence_id, control_id in rows:
            links.setdefault(evidence_id, []).append(control_id)
        return links

    @staticmethod
    def _to_model(row: EvidenceRow, control_ids: List[str]) -> Evidence:
        return Evidence(
            id=row.id,
            content_hash=row.content_hash,
            source_uri=row.source_uri or "",
            description=row.description or "",
            collected_at=row.collected_at,
            control_ids=frozenset(control_ids),
            attributes=dict(row.attributes or {}),
        )
