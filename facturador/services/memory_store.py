"""
memory_store.py — In-process implementations of the collaborator ports.

Used by tests and by the `memory` store backend (single-process demo / dev).
"""

import logging
from datetime import date
from typing import Iterable, Optional
from uuid import uuid4

from facturador.core.errors import InsufficientStock
from facturador.schemas.models import Client, CommittedDocument, DocumentType, PaymentEntry, Product
from facturador.utils.doc_helpers import normalize_cuit

logger = logging.getLogger(__name__)


class InMemoryCatalog:
    def __init__(self, products: Iterable[Product] = (), stock: dict = None):
        self.products: dict[str, Product] = {p.code: p for p in products}
        # (product code, branch id) → units
        self.stock: dict[tuple[str, str], int] = dict(stock or {})

    def add(self, product: Product, stock: dict[str, int] = None) -> Product:
        self.products[product.code] = product
        for branch_id, units in (stock or {}).items():
            self.stock[(product.code, branch_id)] = units
        return product

    def find_by_code(self, code: str) -> Optional[Product]:
        return self.products.get(code)

    def find_by_barcode(self, barcode: str) -> Optional[Product]:
        return next((p for p in self.products.values() if p.barcode and p.barcode == barcode), None)

    def search_by_name(self, query: str, limit: int = 20) -> list[Product]:
        q = (query or "").lower()
        return [p for p in self.products.values() if q in p.name.lower() or q in p.code.lower()][:limit]

    def stock_at(self, product_code: str, branch_id: str) -> int:
        return self.stock.get((product_code, branch_id), 0)


class InMemoryStockKeeper:
    """Moves units in the catalog's stock table."""

    def __init__(self, catalog: InMemoryCatalog):
        self.catalog = catalog
        self.movements: list[tuple[str, str, int]] = []

    def decrement(self, product_code: str, quantity: int, branch_id: str) -> None:
        available = self.catalog.stock_at(product_code, branch_id)
        if quantity > available:
            raise InsufficientStock(product_code, available, quantity)
        self.catalog.stock[(product_code, branch_id)] = available - quantity
        self.movements.append((product_code, branch_id, -quantity))

    def increment(self, product_code: str, quantity: int, branch_id: str) -> None:
        self.catalog.stock[(product_code, branch_id)] = self.catalog.stock_at(product_code, branch_id) + quantity
        self.movements.append((product_code, branch_id, quantity))


class InMemoryClientDirectory:
    def __init__(self, clients: Iterable[Client] = ()):
        self.clients: dict[str, Client] = {c.id: c for c in clients}

    def find_by_identifier(self, identifier: str) -> Optional[Client]:
        if identifier in self.clients:
            return self.clients[identifier]
        digits = normalize_cuit(identifier)
        if not digits:
            return None
        return next((c for c in self.clients.values() if normalize_cuit(c.document) == digits), None)

    def search(self, query: str, limit: int = 20) -> list[Client]:
        q = (query or "").lower()
        return [c for c in self.clients.values() if q in c.name.lower() or q in c.document][:limit]

    def create(self, client: Client) -> Client:
        self.clients[client.id] = client
        logger.info(f"Client created: {client.name} ({client.document})")
        return client


class InMemoryPaymentLedger:
    def __init__(self):
        self.entries: dict[str, PaymentEntry] = {}
        self.voided: set[str] = set()

    def record(self, entry: PaymentEntry) -> str:
        entry_id = uuid4().hex
        self.entries[entry_id] = entry.model_copy(update={"id": entry_id})
        return entry_id

    def void(self, entry_id: str) -> None:
        self.voided.add(entry_id)

    @property
    def active(self) -> list[PaymentEntry]:
        return [e for eid, e in self.entries.items() if eid not in self.voided]


class InMemoryDocumentStore:
    def __init__(self):
        self.documents: dict[str, CommittedDocument] = {}

    def persist(self, document: CommittedDocument) -> str:
        document_id = uuid4().hex
        self.documents[document_id] = document.model_copy(update={"id": document_id})
        return document_id

    def get(self, document_id: str) -> Optional[CommittedDocument]:
        return self.documents.get(document_id)

    def list_quotes(self, branch_id: str) -> list[CommittedDocument]:
        return [
            d for d in self.documents.values()
            if d.document_type == DocumentType.PRESUPUESTO and d.branch.id == branch_id
        ]


class InMemoryCashRegister:
    def __init__(self):
        # (branch id, day) of open registers
        self.open_days: set[tuple[str, date]] = set()

    def open(self, branch_id: str, day: date) -> None:
        self.open_days.add((branch_id, day))

    def close(self, branch_id: str, day: date) -> None:
        self.open_days.discard((branch_id, day))

    def is_open(self, branch_id: str, day: date) -> bool:
        return (branch_id, day) in self.open_days
