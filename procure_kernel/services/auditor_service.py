"""
AuditorService -- the Audit Recorder: append-only, hash-chained audit trail.

Responsibility:
    Appends one immutable AuditEvent per mutating action, carrying the
    old/new snapshots, actor, reason and metadata.  Validates the chain for
    tamper detection, serves per-entity trails and the recent-activity feed,
    and replays an entity's snapshots to reconstruct its state.

Architecture position:
    Kernel > Services -- leaf component.  Called by the stock ledger, the
    order state machine, the approval engine, the receiving reconciler and
    the catalog.

Invariants enforced:
    - Append-only: there is no update path here, and ORM listeners refuse
      UPDATE/DELETE on AuditEvent.
    - Chain: ``hash = H(entity_type|entity_id|action|payload_hash|prev_hash)``
      where payload_hash covers the snapshots, reason, metadata, actor and
      timestamp.
    - Ordering: seq comes from SequenceService; occurred_at never moves
      backwards for one entity (a lagging clock reading is clamped to the
      entity's last timestamp, and seq breaks the tie).
    - Idempotency: an append carrying an idempotency_key that already exists
      returns the stored event instead of writing a second one.

Failure modes:
    - AuditChainBrokenError from validate_chain().
    - IntegrityError on a concurrent duplicate idempotency key.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from procure_kernel.domain.clock import Clock, SystemClock
from procure_kernel.domain.values import ActorRef
from procure_kernel.exceptions import AuditChainBrokenError
from procure_kernel.logging_config import get_logger
from procure_kernel.models.audit_event import AuditAction, AuditEvent
from procure_kernel.services.sequence_service import SequenceService
from procure_kernel.utils.hashing import hash_audit_event, hash_payload, to_json_safe

logger = get_logger("services.auditor")


def as_utc(value: datetime) -> datetime:
    """Normalize a stored timestamp (naive on SQLite) to aware UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _payload_for_hash(
    old_value: dict | None,
    new_value: dict | None,
    reason: str | None,
    metadata: dict | None,
    actor_id: UUID,
    actor_role: str | None,
    occurred_at: datetime,
) -> dict[str, Any]:
    return {
        "old_value": old_value,
        "new_value": new_value,
        "reason": reason,
        "metadata": metadata,
        "actor_id": str(actor_id),
        "actor_role": actor_role,
        "occurred_at": as_utc(occurred_at).isoformat(),
    }


@dataclass(frozen=True)
class AuditLogEntry:
    """Read-side view of one audit entry."""

    seq: int
    entity_type: str
    entity_id: UUID
    action: str
    old_value: dict[str, Any] | None
    new_value: dict[str, Any] | None
    actor_id: UUID
    actor_role: str | None
    reason: str | None
    metadata: dict[str, Any] | None
    occurred_at: datetime
    hash: str

    @classmethod
    def from_model(cls, event: AuditEvent) -> "AuditLogEntry":
        return cls(
            seq=event.seq,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            action=event.action,
            old_value=event.old_value,
            new_value=event.new_value,
            actor_id=event.actor_id,
            actor_role=event.actor_role,
            reason=event.reason,
            metadata=event.extra_metadata,
            occurred_at=as_utc(event.occurred_at),
            hash=event.hash,
        )


class AuditorService:
    """
    Append and read the audit trail.

    Non-goals:
        - Does NOT call ``session.commit()``; the caller owns the transaction,
          so an audit entry commits or rolls back with the mutation it
          describes.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()
        self._sequence_service = SequenceService(session)

    def _get_last_hash(self) -> str | None:
        return self._session.execute(
            select(AuditEvent.hash).order_by(AuditEvent.seq.desc()).limit(1)
        ).scalar_one_or_none()

    def _last_timestamp(self, entity_type: str, entity_id: UUID) -> datetime | None:
        last = self._session.execute(
            select(AuditEvent.occurred_at)
            .where(
                AuditEvent.entity_type == entity_type,
                AuditEvent.entity_id == entity_id,
            )
            .order_by(AuditEvent.seq.desc())
            .limit(1)
        ).scalar_one_or_none()
        return as_utc(last) if last is not None else None

    def find_by_idempotency_key(self, key: str) -> AuditEvent | None:
        return self._session.execute(
            select(AuditEvent).where(AuditEvent.idempotency_key == key)
        ).scalar_one_or_none()

    def append(
        self,
        entity_type: str,
        entity_id: UUID,
        action: AuditAction,
        actor: ActorRef,
        old_value: dict[str, Any] | None = None,
        new_value: dict[str, Any] | None = None,
        reason: str | None = None,
        metadata: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> AuditEvent:
        """
        Append one audit entry linked into the hash chain.

        Postconditions:
            - The new row is flushed with the next global seq, a timestamp no
              earlier than the entity's previous entry, and a chain hash over
              the predecessor's hash.
            - With an existing ``idempotency_key`` nothing is written and the
              stored event is returned.
        """
        if idempotency_key is not None:
            existing = self.find_by_idempotency_key(idempotency_key)
            if existing is not None:
                logger.info(
                    "audit_event_deduplicated",
                    extra={"idempotency_key": idempotency_key, "seq": existing.seq},
                )
                return existing

        # The counter UPDATE serializes appenders, so the last hash read
        # below cannot be overtaken before this row is flushed.
        seq = self._sequence_service.next_value(SequenceService.AUDIT_EVENT)
        prev_hash = self._get_last_hash()

        occurred_at = as_utc(self._clock.now())
        last_ts = self._last_timestamp(entity_type, entity_id)
        if last_ts is not None and occurred_at < last_ts:
            logger.warning(
                "audit_clock_regression_clamped",
                extra={
                    "entity_type": entity_type,
                    "entity_id": str(entity_id),
                    "clock_time": occurred_at,
                    "last_time": last_ts,
                },
            )
            occurred_at = last_ts

        old_json = to_json_safe(old_value) if old_value is not None else None
        new_json = to_json_safe(new_value) if new_value is not None else None
        meta_json = to_json_safe(metadata) if metadata is not None else None

        payload_hash = hash_payload(
            _payload_for_hash(
                old_json, new_json, reason, meta_json,
                actor.actor_id, actor.role, occurred_at,
            )
        )
        action_value = AuditAction(action).value
        event_hash = hash_audit_event(
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action_value,
            payload_hash=payload_hash,
            prev_hash=prev_hash,
        )

        audit_event = AuditEvent(
            seq=seq,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action_value,
            actor_id=actor.actor_id,
            actor_role=actor.role,
            occurred_at=occurred_at,
            old_value=old_json,
            new_value=new_json,
            reason=reason,
            extra_metadata=meta_json,
            idempotency_key=idempotency_key,
            payload_hash=payload_hash,
            prev_hash=prev_hash,
            hash=event_hash,
        )
        self._session.add(audit_event)
        self._session.flush()

        logger.info(
            "audit_event_created",
            extra={
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "action": action_value,
                "seq": seq,
            },
        )
        return audit_event

    # Chain validation

    def validate_chain(self) -> bool:
        """
        Recompute every payload hash and chain hash in seq order.

        Raises:
            AuditChainBrokenError: at the first event that does not match.
        """
        events = self._session.execute(
            select(AuditEvent).order_by(AuditEvent.seq)
        ).scalars().all()

        expected_prev: str | None = None
        for event in events:
            if event.prev_hash != expected_prev:
                logger.critical(
                    "audit_chain_broken",
                    extra={"seq": event.seq, "check": "prev_hash"},
                )
                raise AuditChainBrokenError(
                    str(event.id), expected_prev or "None", event.prev_hash or "None",
                )

            payload_hash = hash_payload(
                _payload_for_hash(
                    event.old_value, event.new_value, event.reason,
                    event.extra_metadata, event.actor_id, event.actor_role,
                    event.occurred_at,
                )
            )
            expected_hash = hash_audit_event(
                entity_type=event.entity_type,
                entity_id=str(event.entity_id),
                action=event.action,
                payload_hash=payload_hash,
                prev_hash=event.prev_hash,
            )
            if payload_hash != event.payload_hash or expected_hash != event.hash:
                logger.critical(
                    "audit_chain_broken",
                    extra={"seq": event.seq, "check": "hash"},
                )
                raise AuditChainBrokenError(str(event.id), expected_hash, event.hash)

            expected_prev = event.hash

        logger.info("audit_chain_valid", extra={"event_count": len(events)})
        return True

    # Read queries

    def get_trail(self, entity_type: str, entity_id: UUID) -> tuple[AuditLogEntry, ...]:
        """All entries for one entity, oldest first."""
        events = self._session.execute(
            select(AuditEvent)
            .where(
                AuditEvent.entity_type == entity_type,
                AuditEvent.entity_id == entity_id,
            )
            .order_by(AuditEvent.seq)
        ).scalars().all()
        return tuple(AuditLogEntry.from_model(e) for e in events)

    def get_recent_events(self, limit: int = 50) -> tuple[AuditLogEntry, ...]:
        """The most recent ``limit`` entries across all entities, newest first."""
        if limit <= 0:
            return ()
        events = self._session.execute(
            select(AuditEvent).order_by(AuditEvent.seq.desc()).limit(limit)
        ).scalars().all()
        return tuple(AuditLogEntry.from_model(e) for e in events)

    def replay(self, entity_type: str, entity_id: UUID, field: str) -> Any:
        """
        Fold an entity's new-value snapshots and return the last value of ``field``.

        Returns None when no entry ever recorded the field.
        """
        value = None
        for entry in self.get_trail(entity_type, entity_id):
            if entry.new_value and field in entry.new_value:
                value = entry.new_value[field]
        return value
