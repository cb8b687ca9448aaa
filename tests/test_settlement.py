"""
FACTURADOR — Settlement orchestration tests.
Numbering, ARCA authorization, offline fallback, commit with compensation.
"""

import asyncio
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from facturador.core.errors import (
    CommitError,
    ExternalAuthorityError,
    InsufficientStock,
    StateError,
    ValidationError,
)
from facturador.modules.settlement import SettlementOrchestrator
from facturador.schemas.models import (
    AuthorizationStatus,
    Client,
    DocumentType,
    DraftState,
    FiscalAuthorizationRequest,
    FiscalAuthorizationResult,
    NotificationChannel,
    NotificationTarget,
    SettlementStep,
    TaxCondition,
)
from facturador.services.memory_store import InMemoryCashRegister
from facturador.services.notification_service import NotificationGateway
from facturador.utils.doc_helpers import current_ar_datetime
from tests.factories import RI_CLIENT


def pay_cash(composer, negotiator, tendered="1000"):
    return negotiator.select_cash(composer.totals.rounded().grand_total, Decimal(tendered))


def rejected(code="10", error="CUIT emisora no autorizada"):
    return FiscalAuthorizationResult(success=False, error=error, error_code=code)


# ─────────────────────────────────────────────────────────────
# FISCAL DOCUMENTS (A/B/C)
# ─────────────────────────────────────────────────────────────

class TestFiscalSettlement:
    @pytest.mark.asyncio
    async def test_authorized_invoice(self, composer, negotiator, orchestrator, authority,
                                      catalog, ledger, documents):
        composer.add_by_code("P001", 2)
        payment = pay_cash(composer, negotiator, "250")

        document = await orchestrator.settle(composer.draft, payment)

        assert document.authorization_status == AuthorizationStatus.AUTHORIZED
        assert document.authorization_code.startswith("7412365478")
        assert document.number == 1
        assert document.formatted_number == "0001-00000001"
        assert document.totals.grand_total == Decimal("242.00")
        assert document.payment.change == Decimal("8.00")
        assert composer.draft.state == DraftState.COMMITTED

        assert catalog.stock_at("P001", "suc-1") == 8
        assert len(ledger.active) == 1
        assert ledger.active[0].document_number == "0001-00000001"
        assert documents.get(document.id).formatted_number == "0001-00000001"

    @pytest.mark.asyncio
    async def test_request_sent_to_authority(self, composer, negotiator, orchestrator, authority):
        composer.set_client(RI_CLIENT)
        composer.add_by_code("P001", 2)
        composer.add_by_code("P002", 2)
        composer.set_adjustment_input("-10")
        await orchestrator.settle(composer.draft, pay_cash(composer, negotiator))

        request = authority.authorize.call_args.args[0]
        assert isinstance(request, FiscalAuthorizationRequest)
        assert request.arca_document_code == 1
        assert request.point_of_sale == 1
        assert request.client_document == "20123456786"
        assert request.client_document_type == 80
        assert request.client_tax_condition == 1
        # 300 * 0.9
        assert request.net == Decimal("270.00")
        assert sum(v.amount for v in request.vat_breakdown) == request.vat

    @pytest.mark.asyncio
    async def test_rejection_fails_at_authorization(self, composer, negotiator, orchestrator,
                                                    authority, catalog, ledger, documents):
        authority.authorize.side_effect = None
        authority.authorize.return_value = rejected()
        composer.add_by_code("P001")

        with pytest.raises(ExternalAuthorityError) as exc:
            await orchestrator.settle(composer.draft, pay_cash(composer, negotiator))

        assert exc.value.code == "AUTHORITY_REJECTED"
        assert exc.value.error_code == "10"
        assert exc.value.retry_available is True
        assert exc.value.offline_fallback_available is True
        assert exc.value.failed_step == SettlementStep.AUTHORIZATION
        assert composer.draft.state == DraftState.FAILED
        assert composer.draft.failed_step == SettlementStep.AUTHORIZATION
        # nothing committed
        assert catalog.stock_at("P001", "suc-1") == 10
        assert ledger.entries == {}
        assert documents.documents == {}

    @pytest.mark.asyncio
    async def test_retry_takes_fresh_number(self, composer, negotiator, orchestrator, authority):
        authority.authorize.side_effect = [
            rejected("07", "ARCA caído"),
            FiscalAuthorizationResult(success=True, number=2, authorization_code="74000000000002"),
        ]
        composer.add_by_code("P001")
        payment = pay_cash(composer, negotiator)

        with pytest.raises(ExternalAuthorityError):
            await orchestrator.settle(composer.draft, payment)
        document = await orchestrator.retry(composer.draft, payment)

        assert document.number == 2
        assert document.authorization_code == "74000000000002"
        assert composer.draft.state == DraftState.COMMITTED

    @pytest.mark.asyncio
    async def test_retry_requires_failed_draft(self, composer, negotiator, orchestrator):
        composer.add_by_code("P001")
        with pytest.raises(StateError):
            await orchestrator.retry(composer.draft, pay_cash(composer, negotiator))

    @pytest.mark.asyncio
    async def test_timeout_is_authority_failure(self, composer, negotiator, sequencer, catalog,
                                                stock, ledger, documents):
        async def hang(request):
            await asyncio.sleep(5)

        slow = AsyncMock()
        slow.authorize.side_effect = hang
        orchestrator = SettlementOrchestrator(sequencer, slow, catalog, stock, ledger, documents,
                                              authority_timeout=0.05)
        composer.add_by_code("P001")

        with pytest.raises(ExternalAuthorityError) as exc:
            await orchestrator.settle(composer.draft, pay_cash(composer, negotiator))
        assert exc.value.code == "AUTHORITY_TIMEOUT"
        assert composer.draft.failed_step == SettlementStep.AUTHORIZATION

    @pytest.mark.asyncio
    async def test_number_in_use_resyncs(self, composer, negotiator, orchestrator, authority):
        calls = []

        async def authorize(request):
            calls.append(request.number)
            if len(calls) == 1:
                return rejected("03", "La numeración ya existe")
            return FiscalAuthorizationResult(success=True, number=request.number, authorization_code="74111")

        authority.authorize.side_effect = authorize
        authority.last_authorized_number.return_value = 10
        composer.add_by_code("P001")

        document = await orchestrator.settle(composer.draft, pay_cash(composer, negotiator))

        assert calls == [1, 11]
        assert document.number == 11
        authority.last_authorized_number.assert_awaited_once_with(DocumentType.FACTURA_B, 1)

    @pytest.mark.asyncio
    async def test_number_in_use_gives_up(self, composer, negotiator, orchestrator, authority):
        authority.authorize.side_effect = None
        authority.authorize.return_value = rejected("02", "Ya autorizado")
        composer.add_by_code("P001")

        with pytest.raises(ExternalAuthorityError):
            await orchestrator.settle(composer.draft, pay_cash(composer, negotiator))
        assert authority.authorize.await_count == 3


# ─────────────────────────────────────────────────────────────
# OFFLINE FALLBACK
# ─────────────────────────────────────────────────────────────

class TestOfflineSettlement:
    @pytest.mark.asyncio
    async def test_offline_after_authority_failure(self, composer, negotiator, orchestrator,
                                                   authority, catalog, stock, ledger):
        authority.authorize.side_effect = None
        authority.authorize.return_value = rejected("07")
        composer.add_by_code("P001", 2)
        payment = pay_cash(composer, negotiator)

        with pytest.raises(ExternalAuthorityError):
            await orchestrator.settle(composer.draft, payment)
        document = await orchestrator.settle_offline(composer.draft, payment)

        assert document.authorization_status == AuthorizationStatus.NOT_AUTHORIZED
        assert document.authorization_code is None
        assert document.number == 2
        assert catalog.stock_at("P001", "suc-1") == 8
        assert stock.movements == [("P001", "suc-1", -2)]
        assert len(ledger.active) == 1

    @pytest.mark.asyncio
    async def test_offline_not_available_without_failure(self, composer, negotiator, orchestrator):
        composer.add_by_code("P001")
        with pytest.raises(StateError) as exc:
            await orchestrator.settle_offline(composer.draft, pay_cash(composer, negotiator))
        assert exc.value.code == "OFFLINE_NOT_AVAILABLE"

    @pytest.mark.asyncio
    async def test_offline_not_available_after_commit_failure(self, composer, negotiator,
                                                              orchestrator, catalog):
        composer.add_by_code("P002", 3)
        payment = pay_cash(composer, negotiator)
        catalog.stock[("P002", "suc-1")] = 1
        with pytest.raises(InsufficientStock):
            await orchestrator.settle(composer.draft, payment)
        with pytest.raises(StateError):
            await orchestrator.settle_offline(composer.draft, payment)


# ─────────────────────────────────────────────────────────────
# X AND QUOTES
# ─────────────────────────────────────────────────────────────

class TestNonFiscalDocuments:
    @pytest.mark.asyncio
    async def test_type_x_skips_authorization(self, composer, negotiator, orchestrator, authority,
                                              catalog, ledger):
        composer.set_document_type(DocumentType.FACTURA_X)
        composer.add_by_code("P001")
        document = await orchestrator.settle(composer.draft, pay_cash(composer, negotiator))

        authority.authorize.assert_not_awaited()
        assert document.authorization_status == AuthorizationStatus.NOT_REQUIRED
        assert document.number == 1
        assert catalog.stock_at("P001", "suc-1") == 9
        assert len(ledger.active) == 1

    @pytest.mark.asyncio
    async def test_quote_has_no_side_effects(self, composer, orchestrator, authority, catalog,
                                             ledger, documents):
        composer.set_document_type(DocumentType.PRESUPUESTO)
        composer.set_client(RI_CLIENT)
        composer.add_by_code("P001", 3)

        document = await orchestrator.settle(composer.draft, None, quote_name="Obra Pérez")

        authority.authorize.assert_not_awaited()
        assert document.authorization_status == AuthorizationStatus.QUOTE
        assert document.quote_name == "Obra Pérez"
        assert document.payment is None
        assert catalog.stock_at("P001", "suc-1") == 10
        assert ledger.entries == {}
        assert documents.list_quotes("suc-1")[0].id == document.id

    @pytest.mark.asyncio
    async def test_quotes_use_their_own_sequence(self, composer, negotiator, orchestrator):
        composer.set_document_type(DocumentType.FACTURA_X)
        composer.add_by_code("P001")
        await orchestrator.settle(composer.draft, pay_cash(composer, negotiator))
        negotiator.reset()

        composer.reset()
        composer.set_document_type(DocumentType.PRESUPUESTO)
        composer.add_by_code("P001")
        quote = await orchestrator.settle(composer.draft)
        assert quote.number == 1


# ─────────────────────────────────────────────────────────────
# VALIDATION
# ─────────────────────────────────────────────────────────────

class TestValidation:
    @pytest.mark.asyncio
    async def test_empty_draft(self, composer, orchestrator):
        with pytest.raises(ValidationError) as exc:
            await orchestrator.settle(composer.draft, None)
        assert exc.value.code == "EMPTY_DRAFT"
        assert composer.draft.state == DraftState.COMPOSING

    @pytest.mark.asyncio
    async def test_payment_required(self, composer, negotiator, orchestrator):
        composer.add_by_code("P001")
        negotiator.begin_transfer(composer.totals.rounded().grand_total, "galicia")
        with pytest.raises(ValidationError) as exc:
            await orchestrator.settle(composer.draft, negotiator.selection)
        assert exc.value.code == "PAYMENT_REQUIRED"

    @pytest.mark.asyncio
    async def test_payment_mismatch_after_edit(self, composer, negotiator, orchestrator, sequences):
        composer.add_by_code("P001")
        payment = pay_cash(composer, negotiator)
        composer.add_by_code("P001")
        with pytest.raises(ValidationError) as exc:
            await orchestrator.settle(composer.draft, payment)
        assert exc.value.code == "PAYMENT_MISMATCH"
        assert composer.draft.state == DraftState.COMPOSING
        # no number consumed
        assert sequences.last_issued((DocumentType.FACTURA_B, "suc-1")) == 0

    @pytest.mark.asyncio
    async def test_factura_a_needs_responsable_inscripto(self, composer, negotiator, orchestrator):
        composer.add_by_code("P001")
        composer.set_document_type(DocumentType.FACTURA_A)
        with pytest.raises(ValidationError) as exc:
            await orchestrator.settle(composer.draft, pay_cash(composer, negotiator))
        assert exc.value.code == "CLIENT_REQUIRED"

    @pytest.mark.asyncio
    async def test_factura_a_needs_cuit(self, composer, negotiator, orchestrator):
        composer.set_client(Client(name="Sin CUIT", document="30111222",
                                   tax_condition=TaxCondition.RESPONSABLE_INSCRIPTO))
        composer.add_by_code("P001")
        with pytest.raises(ValidationError):
            await orchestrator.settle(composer.draft, pay_cash(composer, negotiator))

    @pytest.mark.asyncio
    async def test_committed_draft_cannot_settle_again(self, composer, negotiator, orchestrator):
        composer.add_by_code("P001")
        payment = pay_cash(composer, negotiator)
        await orchestrator.settle(composer.draft, payment)
        with pytest.raises(StateError):
            await orchestrator.settle(composer.draft, payment)


class TestCashRegisterGate:
    @pytest.mark.asyncio
    async def test_closed_register_blocks_sale(self, composer, negotiator, orchestrator, authority, sequences):
        orchestrator.cash_register = InMemoryCashRegister()
        composer.add_by_code("P001")

        with pytest.raises(ValidationError) as exc:
            await orchestrator.settle(composer.draft, pay_cash(composer, negotiator))
        assert exc.value.code == "CASH_REGISTER_CLOSED"
        assert composer.draft.state == DraftState.COMPOSING
        assert authority.authorize.await_count == 0
        assert sequences.last_issued((DocumentType.FACTURA_B, "suc-1")) == 0

    @pytest.mark.asyncio
    async def test_open_register_allows_sale(self, composer, negotiator, orchestrator):
        register = InMemoryCashRegister()
        register.open("suc-1", current_ar_datetime().date())
        orchestrator.cash_register = register
        composer.add_by_code("P001")

        document = await orchestrator.settle(composer.draft, pay_cash(composer, negotiator))
        assert document.authorization_status == AuthorizationStatus.AUTHORIZED

    @pytest.mark.asyncio
    async def test_register_open_elsewhere_does_not_count(self, composer, negotiator, orchestrator):
        register = InMemoryCashRegister()
        register.open("suc-2", current_ar_datetime().date())
        register.open("suc-1", current_ar_datetime().date() - timedelta(days=1))
        orchestrator.cash_register = register
        composer.add_by_code("P001")

        with pytest.raises(ValidationError):
            await orchestrator.settle(composer.draft, pay_cash(composer, negotiator))

    @pytest.mark.asyncio
    async def test_quotes_skip_register(self, composer, orchestrator):
        orchestrator.cash_register = InMemoryCashRegister()
        composer.set_document_type(DocumentType.PRESUPUESTO)
        composer.add_by_code("P001")

        quote = await orchestrator.settle(composer.draft)
        assert quote.authorization_status == AuthorizationStatus.QUOTE


# ─────────────────────────────────────────────────────────────
# COMMIT
# ─────────────────────────────────────────────────────────────

class TestCommit:
    @pytest.mark.asyncio
    async def test_stock_recheck_at_commit(self, composer, negotiator, orchestrator, catalog, ledger):
        composer.add_by_code("P002", 3)
        payment = pay_cash(composer, negotiator)
        # another till sold two units meanwhile
        catalog.stock[("P002", "suc-1")] = 1

        with pytest.raises(InsufficientStock) as exc:
            await orchestrator.settle(composer.draft, payment)
        assert exc.value.failed_step == SettlementStep.COMMIT
        assert composer.draft.state == DraftState.FAILED
        assert composer.draft.failed_step == SettlementStep.COMMIT
        assert catalog.stock_at("P002", "suc-1") == 1
        assert ledger.entries == {}

    @pytest.mark.asyncio
    async def test_retry_after_commit_failure_reuses_number_and_cae(self, composer, negotiator, orchestrator,
                                                                    authority, catalog):
        composer.add_by_code("P002", 3)
        payment = pay_cash(composer, negotiator)
        catalog.stock[("P002", "suc-1")] = 1

        with pytest.raises(InsufficientStock):
            await orchestrator.settle(composer.draft, payment)
        issued = composer.draft.issued_authorization
        assert composer.draft.issued_number == 1
        assert issued.authorization_code == "74123654780001"

        catalog.stock[("P002", "suc-1")] = 3
        document = await orchestrator.retry(composer.draft, payment)

        assert authority.authorize.await_count == 1
        assert document.number == 1
        assert document.formatted_number == "0001-00000001"
        assert document.authorization == issued
        assert document.authorization_status == AuthorizationStatus.AUTHORIZED
        assert catalog.stock_at("P002", "suc-1") == 0
        assert composer.draft.issued_number is None

    @pytest.mark.asyncio
    async def test_issued_draft_is_locked_until_committed(self, composer, negotiator, orchestrator, catalog):
        composer.add_by_code("P002", 3)
        payment = pay_cash(composer, negotiator)
        catalog.stock[("P002", "suc-1")] = 1
        with pytest.raises(InsufficientStock):
            await orchestrator.settle(composer.draft, payment)

        with pytest.raises(StateError) as exc:
            composer.add_by_code("P001")
        assert exc.value.code == "ISSUED_PENDING_COMMIT"
        with pytest.raises(StateError):
            composer.reset()
        assert composer.draft.state == DraftState.FAILED
        assert [item.quantity for item in composer.draft.items] == [3]

    @pytest.mark.asyncio
    async def test_persist_failure_retry_keeps_number(self, composer, negotiator, orchestrator,
                                                      documents, sequences):
        documents.persist = MagicMock(side_effect=[RuntimeError("supabase caído"), "doc-9"])
        composer.set_document_type(DocumentType.FACTURA_X)
        composer.add_by_code("P001")
        payment = pay_cash(composer, negotiator)

        with pytest.raises(CommitError):
            await orchestrator.settle(composer.draft, payment)
        document = await orchestrator.retry(composer.draft, payment)

        assert document.number == 1
        assert document.id == "doc-9"
        assert sequences.last_issued((DocumentType.FACTURA_X, "suc-1")) == 1

    @pytest.mark.asyncio
    async def test_persist_failure_is_compensated(self, composer, negotiator, orchestrator,
                                                  documents, catalog, ledger):
        documents.persist = MagicMock(side_effect=RuntimeError("supabase caído"))
        composer.add_by_code("P001", 2)
        composer.add_by_code("P002", 1)

        with pytest.raises(CommitError):
            await orchestrator.settle(composer.draft, pay_cash(composer, negotiator))

        assert catalog.stock_at("P001", "suc-1") == 10
        assert catalog.stock_at("P002", "suc-1") == 3
        assert len(ledger.entries) == 1
        assert ledger.active == []
        assert composer.draft.failed_step == SettlementStep.COMMIT

    @pytest.mark.asyncio
    async def test_manual_items_do_not_move_stock(self, composer, negotiator, orchestrator, stock):
        composer.add_by_code("P001")
        composer.add_manual_item("Flete", Decimal("500"))
        await orchestrator.settle(composer.draft, pay_cash(composer, negotiator))
        assert stock.movements == [("P001", "suc-1", -1)]

    @pytest.mark.asyncio
    async def test_promoted_quote_keeps_link(self, composer, negotiator, orchestrator):
        composer.set_document_type(DocumentType.PRESUPUESTO)
        composer.add_by_code("P001")
        quote = await orchestrator.settle(composer.draft)

        composer.reset()
        composer.load_quote(quote)
        invoice = await orchestrator.settle(composer.draft, pay_cash(composer, negotiator))
        assert invoice.promoted_from == quote.id
        assert invoice.document_type == DocumentType.FACTURA_B


# ─────────────────────────────────────────────────────────────
# NOTIFICATIONS
# ─────────────────────────────────────────────────────────────

class TestNotifications:
    @pytest.mark.asyncio
    async def test_dispatched_after_commit(self, composer, negotiator, sequencer, authority,
                                           catalog, stock, ledger, documents):
        email = AsyncMock()
        notifications = NotificationGateway({NotificationChannel.EMAIL: email})
        orchestrator = SettlementOrchestrator(sequencer, authority, catalog, stock, ledger, documents,
                                              notifications=notifications)
        composer.add_by_code("P001")

        document = await orchestrator.settle(
            composer.draft, pay_cash(composer, negotiator),
            notify=[NotificationTarget(channel=NotificationChannel.EMAIL, address="cliente@mail.com")],
        )
        await notifications.drain()
        email.send.assert_awaited_once_with(document, "cliente@mail.com")

    @pytest.mark.asyncio
    async def test_delivery_failure_does_not_undo_commit(self, composer, negotiator, sequencer,
                                                          authority, catalog, stock, ledger, documents):
        notifications = NotificationGateway({})
        failures = []
        notifications.delivery_failed.subscribe(lambda *args: failures.append(args))
        orchestrator = SettlementOrchestrator(sequencer, authority, catalog, stock, ledger, documents,
                                              notifications=notifications)
        composer.add_by_code("P001")

        document = await orchestrator.settle(
            composer.draft, pay_cash(composer, negotiator),
            notify=[NotificationTarget(channel=NotificationChannel.WHATSAPP, address="1155551234")],
        )
        await notifications.drain()

        assert composer.draft.state == DraftState.COMMITTED
        assert documents.get(document.id) is not None
        assert failures[0][1] == NotificationChannel.WHATSAPP
