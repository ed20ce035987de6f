"""
CatalogService -- products and suppliers.

Responsibility:
    Registers and deactivates the products and suppliers that orders and
    stock movements reference.  Stock itself is never set here; a new
    product starts at zero and receives its opening balance through the
    stock ledger.

Architecture position:
    Kernel > Services.  Called by the inventory and purchasing facades.

Invariants enforced:
    - SKU and supplier code are unique (checked before insert, and by the
      unique constraints).
    - Deactivation is a flag flip; rows are never deleted.
    - Every registration and deactivation writes one audit entry.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from procure_kernel.domain.clock import Clock, SystemClock
from procure_kernel.domain.validation import (
    ValidationFailure,
    check_non_negative,
    check_required,
    first_failure,
    to_decimal,
)
from procure_kernel.domain.values import ActorRef, ErrorKind
from procure_kernel.exceptions import ProductNotFoundError, SupplierNotFoundError
from procure_kernel.logging_config import get_logger
from procure_kernel.models.audit_event import AuditAction
from procure_kernel.models.product import Product, Supplier
from procure_kernel.services.auditor_service import AuditorService
from procure_kernel.services.validation_gate import ValidationGate

logger = get_logger("services.catalog")


def _duplicate(field_name: str, value: str) -> ValidationFailure:
    return ValidationFailure(
        kind=ErrorKind.DUPLICATE_ITEM,
        message=f"{field_name} {value!r} is already registered",
        field=field_name,
        field_value=value,
    )


class CatalogService:
    """
    Register and deactivate catalog entries.

    Non-goals:
        - Does NOT call ``session.commit()``.
        - Does NOT check permissions; facades do.
    """

    def __init__(
        self,
        session: Session,
        auditor: AuditorService,
        gate: ValidationGate,
        clock: Clock | None = None,
    ):
        self._session = session
        self._auditor = auditor
        self._gate = gate
        self._clock = clock or SystemClock()

    def get_product(self, product_id: UUID) -> Product:
        product = self._session.get(Product, product_id)
        if product is None:
            raise ProductNotFoundError(str(product_id))
        return product

    def get_supplier(self, supplier_id: UUID) -> Supplier:
        supplier = self._session.get(Supplier, supplier_id)
        if supplier is None:
            raise SupplierNotFoundError(str(supplier_id))
        return supplier

    def find_product_by_sku(self, sku: str) -> Product | None:
        return self._session.execute(
            select(Product).where(Product.sku == sku)
        ).scalar_one_or_none()

    def register_product(
        self,
        sku: str,
        name: str,
        unit_cost: Decimal | int | str,
        actor: ActorRef,
    ) -> Product:
        self._gate.enforce(
            first_failure(
                check_required(sku, "sku"),
                check_required(name, "name"),
                check_non_negative(unit_cost, "unit_cost"),
            ),
            "Product",
        )
        if self.find_product_by_sku(sku) is not None:
            self._gate.enforce(_duplicate("sku", sku), "Product")

        product = Product(
            sku=sku,
            name=name,
            unit_cost=to_decimal(unit_cost),
            is_active=True,
            stock_quantity=Decimal("0"),
            version=0,
            created_by_id=actor.actor_id,
        )
        self._session.add(product)
        self._session.flush()

        self._auditor.append(
            entity_type="Product",
            entity_id=product.id,
            action=AuditAction.PRODUCT_REGISTERED,
            actor=actor,
            new_value={
                "sku": sku,
                "name": name,
                "unit_cost": product.unit_cost,
                "is_active": True,
            },
        )
        logger.info(
            "product_registered",
            extra={"product": str(product.id), "sku": sku},
        )
        return product

    def register_supplier(
        self,
        code: str,
        name: str,
        actor: ActorRef,
        contact_email: str | None = None,
    ) -> Supplier:
        self._gate.enforce(
            first_failure(check_required(code, "code"), check_required(name, "name")),
            "Supplier",
        )
        existing = self._session.execute(
            select(Supplier.id).where(Supplier.code == code)
        ).first()
        if existing is not None:
            self._gate.enforce(_duplicate("code", code), "Supplier")

        supplier = Supplier(
            code=code,
            name=name,
            is_active=True,
            contact_email=contact_email,
            created_by_id=actor.actor_id,
        )
        self._session.add(supplier)
        self._session.flush()

        self._auditor.append(
            entity_type="Supplier",
            entity_id=supplier.id,
            action=AuditAction.SUPPLIER_REGISTERED,
            actor=actor,
            new_value={"code": code, "name": name, "is_active": True},
        )
        logger.info(
            "supplier_registered",
            extra={"supplier_id": str(supplier.id), "supplier_code": code},
        )
        return supplier

    def deactivate_product(self, product_id: UUID, actor: ActorRef, reason: str | None = None) -> Product:
        product = self.get_product(product_id)
        if not product.is_active:
            return product
        product.is_active = False
        product.updated_by_id = actor.actor_id
        self._session.flush()
        self._auditor.append(
            entity_type="Product",
            entity_id=product.id,
            action=AuditAction.PRODUCT_DEACTIVATED,
            actor=actor,
            old_value={"is_active": True},
            new_value={"is_active": False},
            reason=reason,
        )
        logger.info("product_deactivated", extra={"product": str(product_id)})
        return product

    def deactivate_supplier(self, supplier_id: UUID, actor: ActorRef, reason: str | None = None) -> Supplier:
        supplier = self.get_supplier(supplier_id)
        if not supplier.is_active:
            return supplier
        supplier.is_active = False
        supplier.updated_by_id = actor.actor_id
        self._session.flush()
        self._auditor.append(
            entity_type="Supplier",
            entity_id=supplier.id,
            action=AuditAction.SUPPLIER_DEACTIVATED,
            actor=actor,
            old_value={"is_active": True},
            new_value={"is_active": False},
            reason=reason,
        )
        logger.info("supplier_deactivated", extra={"supplier_id": str(supplier_id)})
        return supplier
