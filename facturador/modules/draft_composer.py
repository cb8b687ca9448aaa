"""
FACTURADOR — Module 2: Draft Composition Manager
Owns the in-progress invoice draft for one checkout.

Every mutation:
  1. checks the draft is editable (Settling/Committed are locked,
     Failed goes back to Composing)
  2. validates the input before touching the draft
  3. applies the change
  4. recomputes totals and fires totals_changed
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Optional
from uuid import uuid4

import pydantic

from facturador.core.config import settings
from facturador.core.errors import InsufficientStock, NotFoundError, StateError, ValidationError
from facturador.modules.totals import calculate_totals
from facturador.schemas.models import (
    Adjustment,
    AdjustmentPolarity,
    Branch,
    Client,
    CommittedDocument,
    DocumentType,
    DraftState,
    InvoiceDraft,
    LineItem,
    Operator,
    Product,
    Totals,
)
from facturador.services.ports import Catalog
from facturador.utils.doc_helpers import format_document_number
from facturador.utils.signals import Signal

logger = logging.getLogger(__name__)


class DraftComposer:
    def __init__(
        self,
        catalog: Catalog,
        branch: Branch,
        operator: Operator,
        default_tax_rate: Optional[Decimal] = None,
    ):
        self.catalog = catalog
        self.branch = branch
        self.operator = operator
        self.default_tax_rate = (
            default_tax_rate if default_tax_rate is not None else settings.default_tax_rate
        )
        self.totals_changed = Signal("totals_changed")
        self.draft = self._new_draft()
        self._totals = calculate_totals([], self.draft.adjustment, self.draft.apply_tax)

    # ── Read side ──

    @property
    def totals(self) -> Totals:
        return self._totals

    @property
    def items(self) -> list[LineItem]:
        return list(self.draft.items)

    # ── Client & document type ──

    def set_client(self, client: Optional[Client]) -> None:
        """None selects Consumidor Final. Re-derives the type unless a quote is being composed."""
        self._begin_mutation()
        self.draft.client = None if client is None or client.is_final_consumer else client
        if not self.draft.document_type.is_quote:
            self.draft.document_type = self.draft.resolved_client.default_document_type
        self._changed()

    def set_document_type(self, document_type: Optional[DocumentType]) -> None:
        self._begin_mutation()
        self.draft.document_type = document_type or self.draft.resolved_client.default_document_type
        self._changed()

    # ── Line items ──

    def add_line_item(self, product: Product, quantity: int = 1) -> LineItem:
        """Add a product, merging into an existing row for the same product id or code."""
        self._begin_mutation()
        if quantity < 1:
            raise ValidationError("La cantidad debe ser al menos 1")

        existing = next(
            (item for item in self.draft.items
             if item.manual == product.manual and item.matches(product)),
            None,
        )
        new_quantity = quantity + (existing.quantity if existing else 0)
        if not product.manual:
            self._check_stock(product.code, new_quantity)

        if existing:
            existing.quantity = new_quantity
            item = existing
        else:
            item = LineItem(
                product_id=product.id,
                code=product.code,
                name=product.name,
                unit_price=product.price,
                quantity=quantity,
                tax_rate=product.tax_rate,
                manual=product.manual,
            )
            self.draft.items.append(item)

        self._changed()
        return item

    def add_by_code(self, code: str, quantity: int = 1) -> LineItem:
        """Scan/lookup: internal code first, then barcode."""
        code = (code or "").strip()
        product = self.catalog.find_by_code(code) or self.catalog.find_by_barcode(code)
        if product is None:
            raise NotFoundError(f"Producto no encontrado: {code}", code="PRODUCT_NOT_FOUND")
        return self.add_line_item(product, quantity)

    def add_manual_item(
        self,
        name: str,
        price: Decimal,
        quantity: int = 1,
        tax_rate: Optional[Decimal] = None,
        code: Optional[str] = None,
    ) -> LineItem:
        """Item with no catalog match. Never stock-checked."""
        if price is None or Decimal(price) < 0:
            raise ValidationError("El precio no puede ser negativo")
        if tax_rate is not None and Decimal(tax_rate) < 0:
            raise ValidationError("La alícuota no puede ser negativa")
        product = Product(
            code=code or f"MANUAL-{uuid4().hex[:6].upper()}",
            name=name,
            price=Decimal(price),
            tax_rate=Decimal(tax_rate) if tax_rate is not None else self.default_tax_rate,
            manual=True,
        )
        return self.add_line_item(product, quantity)

    def update_line_item(
        self,
        item_id: str,
        quantity: Optional[int] = None,
        price: Optional[Decimal] = None,
        tax_rate: Optional[Decimal] = None,
    ) -> LineItem:
        self._begin_mutation()
        item = self._get_item(item_id)

        if quantity is not None:
            if quantity < 1:
                raise ValidationError("La cantidad debe ser al menos 1")
            if not item.manual and quantity > item.quantity:
                self._check_stock(item.code, quantity)
        if price is not None and Decimal(price) < 0:
            raise ValidationError("El precio no puede ser negativo")
        if tax_rate is not None and Decimal(tax_rate) < 0:
            raise ValidationError("La alícuota no puede ser negativa")

        if quantity is not None:
            item.quantity = quantity
        if price is not None:
            item.unit_price = Decimal(price)
        if tax_rate is not None:
            item.tax_rate = Decimal(tax_rate)

        self._changed()
        return item

    def restore_price(self, item_id: str) -> LineItem:
        self._begin_mutation()
        item = self._get_item(item_id)
        item.unit_price = item.original_unit_price
        self._changed()
        return item

    def remove_line_item(self, item_id: str) -> None:
        self._begin_mutation()
        item = self._get_item(item_id)
        self.draft.items.remove(item)
        self._changed()

    # ── Adjustment & tax ──

    def set_adjustment(self, polarity: AdjustmentPolarity, percentage: Decimal) -> Adjustment:
        """Setting one polarity clears the other."""
        self._begin_mutation()
        try:
            adjustment = Adjustment(polarity=polarity, percentage=Decimal(str(percentage)))
        except pydantic.ValidationError as e:
            raise ValidationError(f"Descuento/recargo inválido: {e.errors()[0]['msg']}")
        self.draft.adjustment = adjustment
        self._changed()
        return adjustment

    def set_adjustment_input(self, raw: Optional[str]) -> Adjustment:
        """Operator text field: "-10" discount, "+5" surcharge, "10" discount."""
        self._begin_mutation()
        try:
            adjustment = Adjustment.parse(raw)
        except pydantic.ValidationError as e:
            raise ValidationError(f"Descuento/recargo inválido: {e.errors()[0]['msg']}")
        self.draft.adjustment = adjustment
        self._changed()
        return adjustment

    def set_tax_applicability(self, apply_tax: bool) -> None:
        self._begin_mutation()
        self.draft.apply_tax = bool(apply_tax)
        self._changed()

    # ── Quotes & lifecycle ──

    def load_quote(self, quote: CommittedDocument) -> InvoiceDraft:
        """Promote a saved quote into a fresh draft that can be settled as an invoice."""
        self._begin_mutation()
        if quote.document_type != DocumentType.PRESUPUESTO:
            raise ValidationError("Solo se pueden cargar presupuestos", code="NOT_A_QUOTE")
        if quote.valid_until and quote.valid_until < date.today():
            logger.warning(f"Loading expired quote {quote.formatted_number} (valid until {quote.valid_until})")

        draft = self._new_draft()
        draft.client = None if quote.client.is_final_consumer else quote.client.model_copy()
        draft.document_type = draft.resolved_client.default_document_type
        draft.items = [item.model_copy() for item in quote.items]
        draft.adjustment = quote.adjustment
        draft.apply_tax = quote.apply_tax
        draft.promoted_from = quote.id
        self.draft = draft

        logger.info(f"Quote {quote.formatted_number} loaded into draft {draft.id}")
        self._changed()
        return draft

    def reset(self) -> InvoiceDraft:
        """Start a new transaction. The only way out of Committed."""
        if self.draft.state == DraftState.SETTLING:
            raise StateError("No se puede reiniciar mientras se procesa el comprobante")
        self._guard_issued()
        self.draft = self._new_draft()
        self._changed()
        return self.draft

    # ── Internals ──

    def _new_draft(self) -> InvoiceDraft:
        return InvoiceDraft(
            branch=self.branch,
            operator=self.operator,
            document_type=Client.final_consumer().default_document_type,
        )

    def _begin_mutation(self) -> None:
        state = self.draft.state
        if state in (DraftState.SETTLING, DraftState.COMMITTED):
            raise StateError(f"El comprobante no se puede modificar en estado '{state.value}'")
        self._guard_issued()
        if state == DraftState.FAILED:
            self.draft.state = DraftState.COMPOSING
            self.draft.failed_step = None
            self.draft.failure_detail = None

    def _guard_issued(self) -> None:
        # The number (and CAE, for A/B/C) covers these exact lines and totals.
        draft = self.draft
        if draft.state == DraftState.FAILED and draft.issued_number is not None:
            raise StateError(
                f"El comprobante {format_document_number(draft.branch.code, draft.issued_number)} "
                f"ya fue numerado; reintente el registro",
                code="ISSUED_PENDING_COMMIT",
            )

    def _get_item(self, item_id: str) -> LineItem:
        item = self.draft.find_item(item_id)
        if item is None:
            raise NotFoundError(f"Ítem no encontrado: {item_id}", code="ITEM_NOT_FOUND")
        return item

    def _check_stock(self, product_code: str, requested: int) -> None:
        available = self.catalog.stock_at(product_code, self.branch.id)
        if requested > available:
            raise InsufficientStock(product_code, available, requested)

    def _changed(self) -> None:
        self._totals = calculate_totals(self.draft.items, self.draft.adjustment, self.draft.apply_tax)
        self.totals_changed.emit(self._totals)
