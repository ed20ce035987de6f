"""
SequenceService -- monotonic sequence allocation via counter rows.

Responsibility:
    Strictly increasing numbers for audit events, purchase order numbers and
    receiving numbers.  Each named sequence is one row in
    ``sequence_counters``.

Architecture position:
    Kernel > Services.  Called by AuditorService and the purchasing module.

Invariants enforced:
    - Monotonic: the counter row is incremented in place with
      ``UPDATE ... SET current_value = current_value + 1``.  The UPDATE takes
      the row lock (PostgreSQL) or the database write lock (SQLite), so
      concurrent allocations serialize on it.  Aggregate max()+1 is never
      used.
    - Transactional: a rolled-back allocation is returned to the sequence.
    - The increment is the first write of the allocating transaction's
      critical section, so AuditorService can read the previous chain hash
      after allocating and be sure no other writer interleaves.

Failure modes:
    - IntegrityError when two transactions create the same counter row at
      once; handled with a savepoint and a second increment.
"""

from sqlalchemy import BigInteger, String, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, Session, mapped_column

from procure_kernel.db.base import Base
from procure_kernel.logging_config import get_logger

logger = get_logger("services.sequence")


class SequenceCounter(Base):
    """One named sequence and its current value."""

    __tablename__ = "sequence_counters"

    name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    current_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


class SequenceService:
    """
    Transactional sequence numbers.

    Non-goals:
        - Does NOT call ``session.commit()``; the caller owns the transaction.
    """

    AUDIT_EVENT = "audit_event"
    PURCHASE_ORDER = "purchase_order"
    RECEIVING_RECORD = "receiving_record"

    def __init__(self, session: Session):
        self._session = session

    def _increment(self, sequence_name: str) -> bool:
        result = self._session.execute(
            update(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .values(current_value=SequenceCounter.current_value + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _read(self, sequence_name: str) -> int:
        return self._session.execute(
            select(SequenceCounter.current_value)
            .where(SequenceCounter.name == sequence_name)
        ).scalar_one()

    def next_value(self, sequence_name: str) -> int:
        """
        Allocate the next value of ``sequence_name`` (always > 0).

        The counter row is created on first use.
        """
        if not self._increment(sequence_name):
            savepoint = self._session.begin_nested()
            try:
                self._session.add(SequenceCounter(name=sequence_name, current_value=1))
                self._session.flush()
                savepoint.commit()
                logger.debug(
                    "sequence_allocated",
                    extra={"sequence_name": sequence_name, "value": 1},
                )
                return 1
            except IntegrityError:
                logger.debug(
                    "sequence_counter_race_retry",
                    extra={"sequence_name": sequence_name},
                )
                savepoint.rollback()
                self._increment(sequence_name)

        value = self._read(sequence_name)
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": value},
        )
        return value

    def current_value(self, sequence_name: str) -> int | None:
        """Current value without incrementing; None if never allocated."""
        return self._session.execute(
            select(SequenceCounter.current_value)
            .where(SequenceCounter.name == sequence_name)
        ).scalar_one_or_none()
