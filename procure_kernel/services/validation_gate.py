"""
ValidationGate -- the effectful half of the Validation Gate.

Responsibility:
    Turns ``ValidationFailure`` values from ``domain/validation.py`` into
    typed exceptions, persists ValidationErrorRecords, and resolves them.

Architecture position:
    Kernel > Services.  Every state-changing component calls ``enforce()``
    before its first write; facades call ``record_error()`` after rolling
    back the rejected unit of work.

Invariants enforced:
    - One failure produces exactly one ValidationErrorRecord.
    - A failed check raises before any write of the triggering operation.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from procure_kernel.domain.clock import Clock, SystemClock
from procure_kernel.domain.validation import ValidationFailure
from procure_kernel.domain.values import ActorRef
from procure_kernel.exceptions import (
    VALIDATION_ERRORS_BY_KIND,
    ValidationErrorNotFoundError,
    ValidationFailedError,
)
from procure_kernel.logging_config import get_logger
from procure_kernel.models.validation_error import ValidationErrorRecord
from procure_kernel.utils.hashing import to_json_safe

logger = get_logger("services.validation_gate")


def exception_for(
    failure: ValidationFailure,
    entity_type: str | None = None,
    entity_id: UUID | None = None,
) -> ValidationFailedError:
    """Build the typed exception matching ``failure.kind``."""
    exc_cls = VALIDATION_ERRORS_BY_KIND[failure.kind.value]
    return exc_cls(
        failure.message,
        field=failure.field,
        field_value=failure.field_value,
        context=dict(failure.context),
        entity_type=entity_type,
        entity_id=entity_id,
    )


class ValidationGate:
    """
    Raise, record and resolve validation failures.

    Non-goals:
        - Does NOT call ``session.commit()``.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()

    def enforce(
        self,
        failure: ValidationFailure | None,
        entity_type: str,
        entity_id: UUID | None = None,
    ) -> None:
        """Raise the typed exception for ``failure``; no-op when it is None."""
        if failure is None:
            return
        logger.info(
            "validation_rejected",
            extra={
                "error_kind": failure.kind.value,
                "entity_type": entity_type,
                "entity_id": str(entity_id) if entity_id else None,
                "field": failure.field,
            },
        )
        raise exception_for(failure, entity_type, entity_id)

    def record_error(
        self,
        error: ValidationFailedError,
        actor: ActorRef | None = None,
        entity_type: str | None = None,
        entity_id: UUID | None = None,
    ) -> ValidationErrorRecord:
        """Persist one ValidationErrorRecord for a raised failure."""
        record = ValidationErrorRecord(
            entity_type=error.entity_type or entity_type or "unknown",
            entity_id=error.entity_id or entity_id,
            error_kind=error.kind,
            message=error.message,
            field_name=error.field,
            field_value=None if error.field_value is None else str(error.field_value),
            context=_json_context(error.context),
            actor_id=actor.actor_id if actor else None,
            occurred_at=self._clock.now(),
        )
        self._session.add(record)
        self._session.flush()
        logger.warning(
            "validation_error_recorded",
            extra={
                "error_kind": error.kind,
                "entity_type": record.entity_type,
                "entity_id": str(record.entity_id) if record.entity_id else None,
                "field": error.field,
                "validation_error_id": str(record.id),
            },
        )
        return record

    def record_failure(
        self,
        failure: ValidationFailure,
        entity_type: str,
        entity_id: UUID | None,
        actor: ActorRef | None = None,
    ) -> ValidationErrorRecord:
        """Persist a failure that is reported rather than raised (per-item rejections)."""
        return self.record_error(exception_for(failure, entity_type, entity_id), actor)

    def resolve(
        self,
        error_id: UUID,
        actor: ActorRef,
        notes: str | None = None,
    ) -> ValidationErrorRecord:
        record = self._session.get(ValidationErrorRecord, error_id)
        if record is None:
            raise ValidationErrorNotFoundError(str(error_id))
        record.resolved = True
        record.resolved_by_id = actor.actor_id
        record.resolved_at = self._clock.now()
        record.resolution_notes = notes
        self._session.flush()
        logger.info(
            "validation_error_resolved",
            extra={"validation_error_id": str(error_id), "resolver": str(actor.actor_id)},
        )
        return record

    def list_errors(
        self,
        entity_type: str | None = None,
        entity_id: UUID | None = None,
        unresolved_only: bool = False,
    ) -> list[ValidationErrorRecord]:
        stmt = select(ValidationErrorRecord).order_by(ValidationErrorRecord.occurred_at)
        if entity_type is not None:
            stmt = stmt.where(ValidationErrorRecord.entity_type == entity_type)
        if entity_id is not None:
            stmt = stmt.where(ValidationErrorRecord.entity_id == entity_id)
        if unresolved_only:
            stmt = stmt.where(ValidationErrorRecord.resolved.is_(False))
        return list(self._session.execute(stmt).scalars().all())


def _json_context(context: dict) -> dict:
    return to_json_safe(context) if context else {}
