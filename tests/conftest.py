"""
Shared fixtures: an in-memory catalog/store set and fake network collaborators.
"""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from facturador.modules.draft_composer import DraftComposer
from facturador.modules.numbering import InMemorySequenceStore, NumberingSequencer
from facturador.modules.payment_negotiator import PaymentNegotiator
from facturador.modules.settlement import SettlementOrchestrator
from facturador.schemas.models import FiscalAuthorizationResult, GatewayPaymentStatus, Product, QrOperation
from facturador.services.memory_store import (
    InMemoryCatalog,
    InMemoryClientDirectory,
    InMemoryDocumentStore,
    InMemoryPaymentLedger,
    InMemoryStockKeeper,
)
from tests.factories import BRANCH, MONO_CLIENT, OPERATOR, RI_CLIENT


@pytest.fixture
def catalog():
    cat = InMemoryCatalog()
    cat.add(Product(id="1", code="P001", barcode="7790001000011", name="Martillo",
                    price=Decimal("100"), tax_rate=Decimal("21")), {"suc-1": 10})
    cat.add(Product(id="2", code="P002", barcode="7790001000028", name="Clavos x100",
                    price=Decimal("50"), tax_rate=Decimal("10.5")), {"suc-1": 3})
    cat.add(Product(id="3", code="P003", name="Sin stock",
                    price=Decimal("10"), tax_rate=Decimal("21")), {"suc-1": 0})
    return cat


@pytest.fixture
def stock(catalog):
    return InMemoryStockKeeper(catalog)


@pytest.fixture
def clients():
    return InMemoryClientDirectory([RI_CLIENT, MONO_CLIENT])


@pytest.fixture
def ledger():
    return InMemoryPaymentLedger()


@pytest.fixture
def documents():
    return InMemoryDocumentStore()


@pytest.fixture
def sequences():
    return InMemorySequenceStore()


@pytest.fixture
def sequencer(sequences):
    return NumberingSequencer(sequences)


@pytest.fixture
def authority():
    fake = AsyncMock()
    counter = {"n": 0}

    async def authorize(request):
        counter["n"] += 1
        return FiscalAuthorizationResult(
            success=True, number=request.number, authorization_code=f"7412365478{counter['n']:04d}",
        )

    fake.authorize.side_effect = authorize
    fake.last_authorized_number.return_value = 0
    return fake


@pytest.fixture
def gateway():
    fake = AsyncMock()
    fake.create_qr_operation.side_effect = lambda amount, op_id: QrOperation(
        operation_id=op_id, qr_payload=f"https://mpago.la/{op_id}", amount=amount,
    )
    fake.poll_status.return_value = GatewayPaymentStatus(paid=False)
    return fake


@pytest.fixture
def bank():
    fake = AsyncMock()
    fake.verify_transfer.return_value = True
    return fake


@pytest.fixture
def composer(catalog):
    return DraftComposer(catalog, BRANCH, OPERATOR, default_tax_rate=Decimal("21"))


@pytest.fixture
def negotiator(gateway, bank):
    return PaymentNegotiator(gateway, bank, poll_interval=0.01, poll_max_seconds=5)


@pytest.fixture
def orchestrator(sequencer, authority, catalog, stock, ledger, documents):
    return SettlementOrchestrator(
        sequencer=sequencer,
        fiscal_authority=authority,
        catalog=catalog,
        stock=stock,
        ledger=ledger,
        documents=documents,
        authority_timeout=2,
    )
