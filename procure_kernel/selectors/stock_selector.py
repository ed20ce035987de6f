"""
Module: procure_kernel.selectors.stock_selector
Responsibility: Read-side queries over the stock ledger: paged movement
    history, a lazy restartable history iterator, and aggregate summaries.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - History is ordered by (occurred_at, ledger_seq); per-product timestamps
      never decrease, so this is also ledger order.
    - Paging is offset-based: a page's ``next_offset`` restarts iteration
      exactly after its last entry, and is None on the final page.
"""

from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import case, func, select

from procure_kernel.domain.validation import to_decimal
from procure_kernel.models.stock_movement import StockMovement
from procure_kernel.selectors.base import BaseSelector
from procure_kernel.services.stock_ledger import StockMovementEntry


@dataclass(frozen=True)
class StockHistoryPage:
    entries: tuple[StockMovementEntry, ...]
    next_offset: int | None


@dataclass(frozen=True)
class StockSummary:
    """Aggregate view of a product's movements over an optional range."""

    product_id: UUID
    total_in: Decimal
    total_out: Decimal
    movement_count: int
    distinct_actors: int

    @property
    def net_change(self) -> Decimal:
        return self.total_in - self.total_out


def _as_decimal(value) -> Decimal:
    result = to_decimal(value)
    return result if result is not None else Decimal("0")


class StockSelector(BaseSelector[StockMovement]):
    """Queries over ``stock_movements``."""

    def _filtered(self, stmt, product_id: UUID, start: datetime | None, end: datetime | None):
        stmt = stmt.where(StockMovement.product_id == product_id)
        if start is not None:
            stmt = stmt.where(StockMovement.occurred_at >= start)
        if end is not None:
            stmt = stmt.where(StockMovement.occurred_at < end)
        return stmt

    def history_page(
        self,
        product_id: UUID,
        start: datetime | None = None,
        end: datetime | None = None,
        offset: int = 0,
        limit: int = 100,
    ) -> StockHistoryPage:
        """
        One page of movements in ``[start, end)``.

        Raises:
            ValueError: negative offset or non-positive limit.
        """
        if offset < 0 or limit <= 0:
            raise ValueError("offset must be >= 0 and limit > 0")
        stmt = self._filtered(select(StockMovement), product_id, start, end)
        rows = self.session.execute(
            stmt.order_by(StockMovement.occurred_at, StockMovement.ledger_seq)
            .offset(offset)
            .limit(limit + 1)
        ).scalars().all()
        has_more = len(rows) > limit
        entries = tuple(StockMovementEntry.from_model(m) for m in rows[:limit])
        return StockHistoryPage(
            entries=entries,
            next_offset=offset + limit if has_more else None,
        )

    def iter_history(
        self,
        product_id: UUID,
        start: datetime | None = None,
        end: datetime | None = None,
        page_size: int = 100,
        offset: int = 0,
    ) -> Iterator[StockMovementEntry]:
        """Lazily yield every movement from ``offset`` on, one page at a time."""
        next_offset: int | None = offset
        while next_offset is not None:
            page = self.history_page(product_id, start, end, next_offset, page_size)
            yield from page.entries
            next_offset = page.next_offset

    def summary(
        self,
        product_id: UUID,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> StockSummary:
        changed = StockMovement.quantity_changed
        stmt = self._filtered(
            select(
                func.coalesce(func.sum(case((changed > 0, changed), else_=0)), 0),
                func.coalesce(func.sum(case((changed < 0, -changed), else_=0)), 0),
                func.count(StockMovement.id),
                func.count(func.distinct(StockMovement.actor_id)),
            ),
            product_id, start, end,
        )
        total_in, total_out, count, actors = self.session.execute(stmt).one()
        return StockSummary(
            product_id=product_id,
            total_in=_as_decimal(total_in),
            total_out=_as_decimal(total_out),
            movement_count=int(count),
            distinct_actors=int(actors),
        )
