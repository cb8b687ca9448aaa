"""
FACTURADOR Pydantic Schemas
Domain models for drafts, payments and committed documents, plus the
request/response models of the API.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

from facturador.core.errors import ValidationError
from facturador.utils.doc_helpers import quantize_money


def _new_id() -> str:
    return uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─────────────────────────────────────────────────────────────
# ENUMS
# ─────────────────────────────────────────────────────────────

class DocumentType(str, Enum):
    FACTURA_A = "A"
    FACTURA_B = "B"
    FACTURA_C = "C"
    FACTURA_X = "X"
    PRESUPUESTO = "P"

    @property
    def requires_authorization(self) -> bool:
        return self in (DocumentType.FACTURA_A, DocumentType.FACTURA_B, DocumentType.FACTURA_C)

    @property
    def is_quote(self) -> bool:
        return self is DocumentType.PRESUPUESTO


class TaxCondition(str, Enum):
    RESPONSABLE_INSCRIPTO = "ResponsableInscripto"
    MONOTRIBUTISTA = "Monotributista"
    EXENTO = "ExentoIVA"
    CONSUMIDOR_FINAL = "ConsumidorFinal"
    RESPONSABLE_NO_INSCRIPTO = "ResponsableNoInscripto"
    NO_ALCANZADO = "NoAlcanzado"
    SUJETO_NO_CATEGORIZADO = "SujetoNoCategorizado"


class AdjustmentPolarity(str, Enum):
    DISCOUNT = "discount"
    SURCHARGE = "surcharge"
    NONE = "none"


class DraftState(str, Enum):
    COMPOSING = "composing"
    SETTLING = "settling"
    COMMITTED = "committed"
    FAILED = "failed"


class SettlementStep(str, Enum):
    VALIDATION = "validation"
    NUMBERING = "numbering"
    AUTHORIZATION = "authorization"
    COMMIT = "commit"


class NegotiationState(str, Enum):
    NONE_SELECTED = "none_selected"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class CardKind(str, Enum):
    DEBIT = "debito"
    CREDIT = "credito"


class AuthorizationStatus(str, Enum):
    AUTHORIZED = "autorizado"
    NOT_AUTHORIZED = "no_autorizado"   # offline fallback marker
    NOT_REQUIRED = "no_fiscal"
    QUOTE = "presupuesto"


class NotificationChannel(str, Enum):
    EMAIL = "email"
    WHATSAPP = "whatsapp"


# ─────────────────────────────────────────────────────────────
# CATALOG / PARTIES
# ─────────────────────────────────────────────────────────────

class Product(BaseModel):
    id: Optional[str] = None
    code: str
    barcode: Optional[str] = None
    name: str
    price: Decimal = Field(..., ge=0)
    tax_rate: Decimal = Field(default=Decimal("21"), ge=0)
    manual: bool = Field(default=False, description="Cargado sin coincidencia en catálogo")


FINAL_CONSUMER_ID = "consumidor-final"


class Client(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str
    document: str = Field(default="0", description="CUIT (11 dígitos) o DNI")
    tax_condition: TaxCondition = TaxCondition.CONSUMIDOR_FINAL
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None

    @classmethod
    def final_consumer(cls) -> "Client":
        return cls(id=FINAL_CONSUMER_ID, name="Consumidor Final", document="0",
                   tax_condition=TaxCondition.CONSUMIDOR_FINAL)

    @property
    def is_final_consumer(self) -> bool:
        return self.id == FINAL_CONSUMER_ID

    @property
    def default_document_type(self) -> DocumentType:
        if self.tax_condition == TaxCondition.RESPONSABLE_INSCRIPTO:
            return DocumentType.FACTURA_A
        return DocumentType.FACTURA_B


class Branch(BaseModel):
    id: str
    code: str = Field(default="1", description="Punto de venta")
    name: str = ""


class Operator(BaseModel):
    id: str
    name: str = ""


# ─────────────────────────────────────────────────────────────
# COMPOSITION
# ─────────────────────────────────────────────────────────────

class LineItem(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=_new_id)
    product_id: Optional[str] = None
    code: str
    name: str
    unit_price: Decimal = Field(..., ge=0)
    original_unit_price: Optional[Decimal] = Field(default=None, ge=0)
    quantity: int = Field(..., ge=1)
    tax_rate: Decimal = Field(default=Decimal("21"), ge=0)
    manual: bool = False

    @model_validator(mode="before")
    @classmethod
    def _default_original_price(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("original_unit_price") is None:
            data = {**data, "original_unit_price": data.get("unit_price")}
        return data

    @computed_field
    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity

    def matches(self, product: Product) -> bool:
        if product.id is not None and self.product_id == product.id:
            return True
        return self.code == product.code


class Adjustment(BaseModel):
    """Single signed percentage. Discount and surcharge cannot coexist."""
    model_config = ConfigDict(frozen=True)

    polarity: AdjustmentPolarity = AdjustmentPolarity.NONE
    percentage: Decimal = Field(default=Decimal("0"), ge=0)

    @model_validator(mode="after")
    def _normalize(self) -> "Adjustment":
        if self.polarity == AdjustmentPolarity.DISCOUNT and self.percentage > 100:
            raise ValueError("El descuento no puede superar el 100%")
        if self.polarity == AdjustmentPolarity.NONE and self.percentage != 0:
            object.__setattr__(self, "percentage", Decimal("0"))
        return self

    @classmethod
    def none(cls) -> "Adjustment":
        return cls()

    @classmethod
    def discount(cls, percentage) -> "Adjustment":
        return cls(polarity=AdjustmentPolarity.DISCOUNT, percentage=Decimal(str(percentage)))

    @classmethod
    def surcharge(cls, percentage) -> "Adjustment":
        return cls(polarity=AdjustmentPolarity.SURCHARGE, percentage=Decimal(str(percentage)))

    @classmethod
    def parse(cls, raw: Optional[str]) -> "Adjustment":
        """
        Parse the operator's discount/surcharge field.
        "-10" → 10% discount, "+5" → 5% surcharge, "10" → 10% discount,
        empty → no adjustment.
        """
        value = (raw or "").strip().replace(",", ".")
        if not value:
            return cls.none()
        if value.startswith("+"):
            builder, value = cls.surcharge, value[1:]
        elif value.startswith("-"):
            builder, value = cls.discount, value[1:]
        else:
            builder = cls.discount
        try:
            pct = Decimal(value.strip())
        except InvalidOperation:
            raise ValidationError(f"Descuento/recargo inválido: {raw!r}")
        if not pct.is_finite() or pct < 0:
            raise ValidationError(f"Descuento/recargo inválido: {raw!r}")
        if pct == 0:
            return cls.none()
        return builder(pct)


class Totals(BaseModel):
    subtotal: Decimal
    adjusted_net: Decimal
    tax_by_rate: dict[Decimal, Decimal] = Field(default_factory=dict)
    tax_total: Decimal
    grand_total: Decimal

    def rounded(self) -> "Totals":
        """Cent-rounded copy. Net and tax are rounded separately; total is their sum."""
        net = quantize_money(self.adjusted_net)
        tax = quantize_money(self.tax_total)
        return Totals(
            subtotal=quantize_money(self.subtotal),
            adjusted_net=net,
            tax_by_rate={rate: quantize_money(amount) for rate, amount in self.tax_by_rate.items()},
            tax_total=tax,
            grand_total=net + tax,
        )


class InvoiceDraft(BaseModel):
    id: str = Field(default_factory=_new_id)
    client: Optional[Client] = None
    document_type: DocumentType = DocumentType.FACTURA_B
    items: list[LineItem] = Field(default_factory=list)
    adjustment: Adjustment = Field(default_factory=Adjustment)
    apply_tax: bool = True
    branch: Branch
    operator: Operator
    created_at: datetime = Field(default_factory=_utcnow)
    state: DraftState = DraftState.COMPOSING
    failed_step: Optional[SettlementStep] = None
    failure_detail: Optional[str] = None
    promoted_from: Optional[str] = None
    # Set once a number (and CAE) is obtained. Kept through a commit failure so
    # a retry commits the same fiscal document instead of authorizing a new one.
    issued_number: Optional[int] = None
    issued_status: Optional[AuthorizationStatus] = None
    issued_authorization: Optional[FiscalAuthorizationResult] = None

    @property
    def resolved_client(self) -> Client:
        return self.client or Client.final_consumer()

    def find_item(self, item_id: str) -> Optional[LineItem]:
        return next((item for item in self.items if item.id == item_id), None)


# ─────────────────────────────────────────────────────────────
# PAYMENT
# ─────────────────────────────────────────────────────────────

class CashPayment(BaseModel):
    method: Literal["cash"] = "cash"
    amount: Decimal
    tendered: Decimal
    change: Decimal

    @property
    def is_confirmed(self) -> bool:
        return True


class CardPayment(BaseModel):
    method: Literal["card"] = "card"
    amount: Decimal
    kind: CardKind
    network: str
    installments: Optional[int] = Field(default=None, ge=1)
    last_digits: Optional[str] = Field(default=None, pattern=r"^\d{4}$")

    @property
    def is_confirmed(self) -> bool:
        return True


class TransferPayment(BaseModel):
    method: Literal["transfer"] = "transfer"
    amount: Decimal
    bank_id: str
    verified: bool = False
    attested: bool = False
    reference: Optional[str] = None

    @property
    def is_confirmed(self) -> bool:
        return self.verified or self.attested


class DigitalWalletPayment(BaseModel):
    method: Literal["digital_wallet"] = "digital_wallet"
    amount: Decimal
    operation_id: str
    confirmed: bool = False
    raw_confirmation: Optional[dict] = None

    @property
    def is_confirmed(self) -> bool:
        return self.confirmed


PaymentSelection = Annotated[
    Union[CashPayment, CardPayment, TransferPayment, DigitalWalletPayment],
    Field(discriminator="method"),
]


class QrOperation(BaseModel):
    operation_id: str
    qr_payload: str
    amount: Decimal


class GatewayPaymentStatus(BaseModel):
    paid: bool
    status: str = "pending"
    details: Optional[dict] = None


class PaymentEntry(BaseModel):
    id: Optional[str] = None
    document_number: str
    document_type: DocumentType
    branch_id: str
    operator_id: str
    method: str
    amount: Decimal
    details: dict = Field(default_factory=dict)
    recorded_at: datetime = Field(default_factory=_utcnow)


# ─────────────────────────────────────────────────────────────
# FISCAL AUTHORIZATION
# ─────────────────────────────────────────────────────────────

class FiscalItem(BaseModel):
    code: str
    description: str
    quantity: int
    unit_price: Decimal
    subtotal: Decimal
    vat_code: int


class VatBreakdown(BaseModel):
    vat_code: int
    base: Decimal
    amount: Decimal


class FiscalAuthorizationRequest(BaseModel):
    document_type: DocumentType
    arca_document_code: int
    point_of_sale: int
    number: int
    issue_date: date
    client_document_type: int
    client_document: str
    client_name: str
    client_tax_condition: int
    items: list[FiscalItem]
    net: Decimal
    vat: Decimal
    total: Decimal
    vat_breakdown: list[VatBreakdown] = Field(default_factory=list)
    payment_method: str = "cash"


class FiscalAuthorizationResult(BaseModel):
    """Outcome of one authorization call. Never mutated once produced."""
    model_config = ConfigDict(frozen=True)

    success: bool
    number: Optional[int] = None
    authorization_code: Optional[str] = None
    authorization_expiry: Optional[date] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    raw_response: Optional[dict] = None


InvoiceDraft.model_rebuild()


# ─────────────────────────────────────────────────────────────
# COMMITTED DOCUMENT
# ─────────────────────────────────────────────────────────────

class CommittedDocument(BaseModel):
    id: Optional[str] = None
    draft_id: str
    document_type: DocumentType
    number: int
    formatted_number: str
    branch: Branch
    operator: Operator
    client: Client
    items: list[LineItem]
    adjustment: Adjustment
    apply_tax: bool
    totals: Totals
    payment: Optional[PaymentSelection] = None
    authorization: Optional[FiscalAuthorizationResult] = None
    authorization_status: AuthorizationStatus
    issued_at: datetime = Field(default_factory=_utcnow)
    quote_name: Optional[str] = None
    valid_until: Optional[date] = None
    promoted_from: Optional[str] = None

    @property
    def authorization_code(self) -> Optional[str]:
        return self.authorization.authorization_code if self.authorization else None


# ─────────────────────────────────────────────────────────────
# API REQUESTS
# ─────────────────────────────────────────────────────────────

class SessionCreateRequest(BaseModel):
    branch: Branch
    operator: Operator


class ClientSelectRequest(BaseModel):
    """Select by id/identifier. Both empty selects Consumidor Final."""
    client_id: Optional[str] = None
    identifier: Optional[str] = None


class ClientCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    document: str = "0"
    tax_condition: TaxCondition = TaxCondition.CONSUMIDOR_FINAL
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class DocumentTypeRequest(BaseModel):
    document_type: Optional[DocumentType] = Field(
        None, description="Vacío re-deriva el tipo según la condición IVA del cliente")


class AddItemRequest(BaseModel):
    code: str = Field(..., min_length=1, description="Código interno o código de barras")
    quantity: int = Field(default=1, ge=1)


class ManualItemRequest(BaseModel):
    code: Optional[str] = None
    name: str = Field(..., min_length=1)
    price: Decimal = Field(..., ge=0)
    tax_rate: Optional[Decimal] = Field(default=None, ge=0)
    quantity: int = Field(default=1, ge=1)


class UpdateItemRequest(BaseModel):
    quantity: Optional[int] = Field(default=None, ge=1)
    price: Optional[Decimal] = Field(default=None, ge=0)
    tax_rate: Optional[Decimal] = Field(default=None, ge=0)


class AdjustmentRequest(BaseModel):
    value: Optional[str] = Field(None, description='Formato del operador: "-10", "+5", "10"')
    polarity: Optional[AdjustmentPolarity] = None
    percentage: Decimal = Field(default=Decimal("0"), ge=0)


class TaxRequest(BaseModel):
    apply_tax: bool


class CashPaymentRequest(BaseModel):
    tendered: Decimal = Field(..., ge=0)


class CardPaymentRequest(BaseModel):
    kind: CardKind
    network: str
    installments: Optional[int] = Field(default=None, ge=1)
    last_digits: Optional[str] = Field(default=None, pattern=r"^\d{4}$")


class TransferPaymentRequest(BaseModel):
    bank_id: str
    reference: Optional[str] = None


class TransferAttestRequest(BaseModel):
    reference: Optional[str] = None


class NotificationTarget(BaseModel):
    channel: NotificationChannel
    address: str = Field(..., min_length=3)


class SettleRequest(BaseModel):
    notify: list[NotificationTarget] = Field(default_factory=list)
    quote_name: Optional[str] = None
    valid_until: Optional[date] = None


# ─────────────────────────────────────────────────────────────
# API RESPONSES
# ─────────────────────────────────────────────────────────────

class PaymentStateResponse(BaseModel):
    state: NegotiationState
    payment: Optional[PaymentSelection] = None
    operation_id: Optional[str] = None


class SessionResponse(BaseModel):
    session_id: str
    draft: InvoiceDraft
    totals: Totals
    payment: PaymentStateResponse


class WalletResponse(BaseModel):
    operation_id: str
    qr_payload: str
    qr_png_base64: str
    amount: Decimal


class SettleResponse(BaseModel):
    document: CommittedDocument
    draft_state: DraftState


class ErrorResponse(BaseModel):
    """Standard error response."""
    error: str
    detail: str
    code: Optional[str] = None
    failed_step: Optional[str] = None
    retry_available: Optional[bool] = None
    offline_fallback_available: Optional[bool] = None


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str
    environment: str
    arca_url: str
    store_backend: str
