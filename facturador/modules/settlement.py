"""
FACTURADOR — Module 5: Settlement Orchestrator
Turns a composed draft plus a confirmed payment into a committed document.

Orquesta: validar → numerar → autorizar (A/B/C) → registrar → notificar.

  composing ──settle──► settling ──► committed
                           │
                           └──► failed (failed_step = numbering | authorization | commit)

  failed ──retry──► settling             (same draft; fresh number unless one was
                                          already issued, then commit only)
  failed ──settle_offline──► settling    (A/B/C only, after an authorization failure:
                                          issued without CAE, marked no_autorizado)

Type X takes a number without authorization. Quotes (P) take a number from
their own sequence and skip authorization, stock and payment.
Everything but quotes needs the branch register (caja) open for the day when
a CashRegister is configured.

Commit is compensated: if persisting fails after stock was decremented or
the payment recorded, stock is restored and the ledger entry voided.
"""

import asyncio
import logging
from collections import Counter
from datetime import date
from typing import Iterable, Optional

from facturador.core.config import settings
from facturador.core.errors import (
    CommitError,
    ExternalAuthorityError,
    FacturadorError,
    InsufficientStock,
    NumberingConflict,
    StateError,
    ValidationError,
)
from facturador.modules.fiscal_authority import NUMBER_IN_USE_CODES, build_authorization_request
from facturador.modules.numbering import NumberingSequencer
from facturador.modules.totals import calculate_totals
from facturador.schemas.models import (
    AuthorizationStatus,
    CashPayment,
    CommittedDocument,
    DocumentType,
    DraftState,
    FiscalAuthorizationResult,
    InvoiceDraft,
    NotificationTarget,
    PaymentEntry,
    PaymentSelection,
    SettlementStep,
    TaxCondition,
    Totals,
)
from facturador.services.notification_service import NotificationGateway
from facturador.services.ports import (
    CashRegister,
    Catalog,
    DocumentStore,
    FiscalAuthority,
    PaymentLedger,
    StockKeeper,
)
from facturador.utils.doc_helpers import current_ar_datetime, format_document_number, normalize_cuit

logger = logging.getLogger(__name__)

MAX_NUMBER_RESYNCS = 2


class SettlementOrchestrator:
    """
    Usage:
        orchestrator = SettlementOrchestrator(sequencer, authority, catalog, stock, ledger, documents)
        document = await orchestrator.settle(composer.draft, negotiator.confirmed_payment)
    """

    def __init__(
        self,
        sequencer: NumberingSequencer,
        fiscal_authority: FiscalAuthority,
        catalog: Catalog,
        stock: StockKeeper,
        ledger: PaymentLedger,
        documents: DocumentStore,
        notifications: Optional[NotificationGateway] = None,
        authority_timeout: Optional[float] = None,
        cash_register: Optional[CashRegister] = None,
    ):
        self.sequencer = sequencer
        self.fiscal_authority = fiscal_authority
        self.catalog = catalog
        self.stock = stock
        self.ledger = ledger
        self.documents = documents
        self.notifications = notifications
        # None disables the open-register check.
        self.cash_register = cash_register
        # Covers every transport attempt of the client plus its backoff.
        self.authority_timeout = authority_timeout or (
            settings.fiscal_timeout_seconds * settings.fiscal_max_attempts + 10
        )

    # ══════════════════════════════════════════════════════════
    # ENTRY POINTS
    # ══════════════════════════════════════════════════════════

    async def settle(
        self,
        draft: InvoiceDraft,
        payment: Optional[PaymentSelection] = None,
        notify: Iterable[NotificationTarget] = (),
        quote_name: Optional[str] = None,
        valid_until: Optional[date] = None,
    ) -> CommittedDocument:
        if draft.state not in (DraftState.COMPOSING, DraftState.FAILED):
            raise StateError(f"No se puede emitir un comprobante en estado '{draft.state.value}'")
        return await self._run(draft, payment, notify, offline=False,
                               quote_name=quote_name, valid_until=valid_until)

    async def retry(
        self,
        draft: InvoiceDraft,
        payment: Optional[PaymentSelection] = None,
        notify: Iterable[NotificationTarget] = (),
    ) -> CommittedDocument:
        """
        Re-run a failed settlement. A failure before a number was issued takes a
        fresh one; a commit failure reuses the issued number and CAE.
        """
        if draft.state != DraftState.FAILED:
            raise StateError("Solo se puede reintentar un comprobante fallido")
        logger.info(f"Retrying settlement of draft {draft.id} (failed at {draft.failed_step})")
        return await self._run(draft, payment, notify, offline=False)

    async def settle_offline(
        self,
        draft: InvoiceDraft,
        payment: Optional[PaymentSelection] = None,
        notify: Iterable[NotificationTarget] = (),
    ) -> CommittedDocument:
        """'Facturar sin ARCA': issue without CAE after an authorization failure."""
        if (
            draft.state != DraftState.FAILED
            or draft.failed_step != SettlementStep.AUTHORIZATION
            or not draft.document_type.requires_authorization
        ):
            raise StateError(
                "La emisión sin autorización solo está disponible tras un fallo de ARCA",
                code="OFFLINE_NOT_AVAILABLE",
            )
        logger.warning(f"Settling draft {draft.id} offline (no CAE)")
        return await self._run(draft, payment, notify, offline=True)

    # ══════════════════════════════════════════════════════════
    # PIPELINE
    # ══════════════════════════════════════════════════════════

    async def _run(
        self,
        draft: InvoiceDraft,
        payment: Optional[PaymentSelection],
        notify: Iterable[NotificationTarget],
        offline: bool,
        quote_name: Optional[str] = None,
        valid_until: Optional[date] = None,
    ) -> CommittedDocument:
        totals = self.validate(draft, payment)
        if draft.document_type.is_quote:
            payment = None

        draft.state = DraftState.SETTLING
        draft.failed_step = None
        draft.failure_detail = None
        step = SettlementStep.NUMBERING

        try:
            if draft.issued_number is not None:
                number, status = draft.issued_number, draft.issued_status
                authorization = draft.issued_authorization
                logger.info(f"Reusing number {number} ({status.value}) for draft {draft.id}, commit only")
            else:
                if draft.document_type.requires_authorization and not offline:
                    step = SettlementStep.AUTHORIZATION
                number, status, authorization = await self._issue(draft, totals, payment, offline)

            step = SettlementStep.COMMIT
            document = self._commit(draft, totals, payment, number, authorization, status,
                                    quote_name, valid_until)

        except NumberingConflict as e:
            self._fail(draft, SettlementStep.NUMBERING, e)
            raise
        except ExternalAuthorityError as e:
            e.retry_available = True
            e.offline_fallback_available = draft.document_type.requires_authorization
            self._fail(draft, step, e)
            raise
        except FacturadorError as e:
            self._fail(draft, step, e)
            raise
        except Exception as e:
            logger.exception(f"Unexpected error settling draft {draft.id} at {step.value}")
            self._fail(draft, step, e)
            raise

        draft.state = DraftState.COMMITTED
        draft.issued_number = None
        draft.issued_status = None
        draft.issued_authorization = None
        logger.info(
            f"Document committed: {document.document_type.value} {document.formatted_number} "
            f"status={document.authorization_status.value} total={document.totals.grand_total}"
        )
        self._dispatch(document, notify)
        return document

    def validate(self, draft: InvoiceDraft, payment: Optional[PaymentSelection]) -> Totals:
        """Entry checks. Raises ValidationError without touching the draft."""
        if not draft.items:
            raise ValidationError("El comprobante no tiene ítems", code="EMPTY_DRAFT")

        client = draft.resolved_client
        if draft.document_type == DocumentType.FACTURA_A and (
            client.tax_condition != TaxCondition.RESPONSABLE_INSCRIPTO
            or len(normalize_cuit(client.document)) != 11
        ):
            raise ValidationError(
                "La Factura A requiere un cliente Responsable Inscripto con CUIT", code="CLIENT_REQUIRED"
            )

        totals = calculate_totals(draft.items, draft.adjustment, draft.apply_tax).rounded()
        if draft.document_type.is_quote:
            return totals

        if self.cash_register is not None and not self.cash_register.is_open(
            draft.branch.id, current_ar_datetime().date()
        ):
            raise ValidationError(
                "La caja de la sucursal no está abierta", code="CASH_REGISTER_CLOSED"
            )
        if payment is None or not payment.is_confirmed:
            raise ValidationError("Debe confirmar el pago antes de emitir", code="PAYMENT_REQUIRED")
        if payment.amount != totals.grand_total:
            raise ValidationError(
                f"El pago ({payment.amount}) no coincide con el total ({totals.grand_total})",
                code="PAYMENT_MISMATCH",
            )
        if isinstance(payment, CashPayment) and payment.tendered < totals.grand_total:
            raise ValidationError("El monto recibido es menor al total a pagar", code="INSUFFICIENT_TENDER")
        return totals

    async def _issue(
        self, draft: InvoiceDraft, totals: Totals, payment: Optional[PaymentSelection], offline: bool
    ) -> tuple[int, AuthorizationStatus, Optional[FiscalAuthorizationResult]]:
        """Take a number (authorized by ARCA for A/B/C) and pin it to the draft."""
        authorization = None
        if draft.document_type.requires_authorization and not offline:
            number, authorization = await self._authorize(draft, totals, payment)
            status = AuthorizationStatus.AUTHORIZED
        else:
            number = await self.sequencer.next_number(draft.document_type, draft.branch.id)
            if offline:
                status = AuthorizationStatus.NOT_AUTHORIZED
            elif draft.document_type.is_quote:
                status = AuthorizationStatus.QUOTE
            else:
                status = AuthorizationStatus.NOT_REQUIRED

        draft.issued_number = number
        draft.issued_status = status
        draft.issued_authorization = authorization
        return number, status, authorization

    async def _authorize(
        self, draft: InvoiceDraft, totals: Totals, payment: Optional[PaymentSelection]
    ) -> tuple[int, FiscalAuthorizationResult]:
        for attempt in range(MAX_NUMBER_RESYNCS + 1):
            number = await self.sequencer.next_number(draft.document_type, draft.branch.id)
            request = build_authorization_request(draft, totals, number, payment)
            try:
                result = await asyncio.wait_for(
                    self.fiscal_authority.authorize(request), timeout=self.authority_timeout
                )
            except asyncio.TimeoutError:
                raise ExternalAuthorityError(
                    f"ARCA no respondió en {self.authority_timeout}s",
                    code="AUTHORITY_TIMEOUT", status_code=504, connection_error=True,
                )

            if result.success:
                return number, result

            if result.error_code in NUMBER_IN_USE_CODES and attempt < MAX_NUMBER_RESYNCS:
                logger.warning(
                    f"Number {number} already used at ARCA ({result.error_code}), resyncing sequence"
                )
                await self._resync(draft, number)
                continue

            raise ExternalAuthorityError(
                f"ARCA rechazó el comprobante: {result.error}",
                code="AUTHORITY_REJECTED",
                error_code=result.error_code,
                response=result.raw_response,
            )

    async def _resync(self, draft: InvoiceDraft, number: int) -> None:
        target = number
        try:
            last = await self.fiscal_authority.last_authorized_number(
                draft.document_type, int(draft.branch.code)
            )
            target = max(target, last)
        except ExternalAuthorityError as e:
            logger.warning(f"Could not read last authorized number, skipping past {number}: {e.message}")
        await self.sequencer.skip_past(draft.document_type, draft.branch.id, target)

    # ══════════════════════════════════════════════════════════
    # COMMIT
    # ══════════════════════════════════════════════════════════

    def _commit(
        self,
        draft: InvoiceDraft,
        totals: Totals,
        payment: Optional[PaymentSelection],
        number: int,
        authorization: Optional[FiscalAuthorizationResult],
        status: AuthorizationStatus,
        quote_name: Optional[str],
        valid_until: Optional[date],
    ) -> CommittedDocument:
        stock_lines = [] if draft.document_type.is_quote else [i for i in draft.items if not i.manual]
        self._recheck_stock(draft, stock_lines)

        formatted = format_document_number(draft.branch.code, number)
        document = CommittedDocument(
            draft_id=draft.id,
            document_type=draft.document_type,
            number=number,
            formatted_number=formatted,
            branch=draft.branch,
            operator=draft.operator,
            client=draft.resolved_client,
            items=[item.model_copy() for item in draft.items],
            adjustment=draft.adjustment,
            apply_tax=draft.apply_tax,
            totals=totals,
            payment=payment,
            authorization=authorization,
            authorization_status=status,
            quote_name=quote_name if draft.document_type.is_quote else None,
            valid_until=valid_until if draft.document_type.is_quote else None,
            promoted_from=draft.promoted_from,
        )

        decremented = []
        entry_id = None
        try:
            for item in stock_lines:
                self.stock.decrement(item.code, item.quantity, draft.branch.id)
                decremented.append(item)
            if payment is not None:
                entry_id = self.ledger.record(PaymentEntry(
                    document_number=formatted,
                    document_type=draft.document_type,
                    branch_id=draft.branch.id,
                    operator_id=draft.operator.id,
                    method=payment.method,
                    amount=payment.amount,
                    details=payment.model_dump(mode="json", exclude={"method", "amount"}),
                ))
            document.id = self.documents.persist(document)
        except Exception as e:
            logger.error(f"Commit of {formatted} failed, compensating: {e}")
            self._compensate(draft, decremented, entry_id)
            raise CommitError(f"No se pudo registrar el comprobante {formatted}: {e}") from e

        return document

    def _recheck_stock(self, draft: InvoiceDraft, lines: list) -> None:
        required = Counter()
        for item in lines:
            required[item.code] += item.quantity
        for code, quantity in required.items():
            available = self.catalog.stock_at(code, draft.branch.id)
            if quantity > available:
                raise InsufficientStock(code, available, quantity)

    def _compensate(self, draft: InvoiceDraft, decremented: list, entry_id: Optional[str]) -> None:
        for item in reversed(decremented):
            try:
                self.stock.increment(item.code, item.quantity, draft.branch.id)
            except Exception:
                logger.exception(f"Stock compensation failed for {item.code} x{item.quantity}")
        if entry_id is not None:
            try:
                self.ledger.void(entry_id)
            except Exception:
                logger.exception(f"Could not void payment entry {entry_id}")

    # ══════════════════════════════════════════════════════════
    # HELPERS
    # ══════════════════════════════════════════════════════════

    @staticmethod
    def _fail(draft: InvoiceDraft, step: SettlementStep, error: Exception) -> None:
        draft.state = DraftState.FAILED
        draft.failed_step = step
        draft.failure_detail = getattr(error, "message", None) or str(error)
        if isinstance(error, FacturadorError):
            error.failed_step = step
        logger.warning(f"Settlement of draft {draft.id} failed at {step.value}: {draft.failure_detail}")

    def _dispatch(self, document: CommittedDocument, notify: Iterable[NotificationTarget]) -> None:
        if self.notifications is None:
            return
        for target in notify:
            self.notifications.dispatch(document, target.channel, target.address)
