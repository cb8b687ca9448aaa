"""
ports.py — Collaborator interfaces the engine depends on.

Composition-time collaborators (catalog, clients, stock, ledger, documents,
sequences) are synchronous, like the Supabase client they are backed by.
Network collaborators (fiscal authority, payment gateways, notification
channels) are async.
"""

from datetime import date
from decimal import Decimal
from typing import Optional, Protocol

from facturador.schemas.models import (
    Client,
    CommittedDocument,
    DocumentType,
    FiscalAuthorizationRequest,
    FiscalAuthorizationResult,
    GatewayPaymentStatus,
    PaymentEntry,
    Product,
    QrOperation,
)

# (document type, branch id)
SequenceKey = tuple[DocumentType, str]


class Catalog(Protocol):
    def find_by_code(self, code: str) -> Optional[Product]: ...

    def find_by_barcode(self, barcode: str) -> Optional[Product]: ...

    def search_by_name(self, query: str, limit: int = 20) -> list[Product]: ...

    def stock_at(self, product_code: str, branch_id: str) -> int: ...


class ClientDirectory(Protocol):
    def find_by_identifier(self, identifier: str) -> Optional[Client]:
        """Lookup by id or document number (CUIT/DNI)."""
        ...

    def search(self, query: str, limit: int = 20) -> list[Client]: ...

    def create(self, client: Client) -> Client: ...


class StockKeeper(Protocol):
    def decrement(self, product_code: str, quantity: int, branch_id: str) -> None: ...

    def increment(self, product_code: str, quantity: int, branch_id: str) -> None: ...


class PaymentLedger(Protocol):
    def record(self, entry: PaymentEntry) -> str: ...

    def void(self, entry_id: str) -> None: ...


class DocumentStore(Protocol):
    def persist(self, document: CommittedDocument) -> str: ...

    def get(self, document_id: str) -> Optional[CommittedDocument]: ...

    def list_quotes(self, branch_id: str) -> list[CommittedDocument]: ...


class SequenceStore(Protocol):
    def last_issued(self, key: SequenceKey) -> int: ...

    def reserve(self, key: SequenceKey, expected_last: int, new_last: int) -> bool:
        """Compare-and-set. False when another writer moved the counter."""
        ...


class FiscalAuthority(Protocol):
    async def authorize(self, request: FiscalAuthorizationRequest) -> FiscalAuthorizationResult: ...

    async def last_authorized_number(self, document_type: DocumentType, point_of_sale: int) -> int: ...


class PaymentGateway(Protocol):
    async def create_qr_operation(self, amount: Decimal, operation_id: str) -> QrOperation: ...

    async def poll_status(self, operation_id: str) -> GatewayPaymentStatus: ...


class BankVerifier(Protocol):
    async def verify_transfer(self, bank_id: str, amount: Decimal, reference: Optional[str]) -> bool: ...


class NotificationSender(Protocol):
    async def send(self, document: CommittedDocument, address: str) -> None: ...


class CashRegister(Protocol):
    def is_open(self, branch_id: str, day: date) -> bool:
        """True when the branch's register (caja) was opened for that day and not closed."""
        ...
