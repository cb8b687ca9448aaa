"""
FACTURADOR — Module 3: Payment Method Negotiator
State machine for the payment of the current draft.

States:
  none_selected → awaiting_confirmation → confirmed | cancelled

  Cash            synchronous, tendered ≥ due, change computed
  Card            synchronous capture (kind, network, installments, last 4)
  Transfer        awaiting until verified by the bank or attested by the operator
  Digital wallet  QR operation + background polling task

A poll result is applied only if the negotiator is still awaiting that exact
operation and its handle was not cancelled. Any new selection, cancel() or
close() stops the polling task.
"""

import asyncio
import logging
from decimal import Decimal
from typing import Optional

from facturador.core.config import settings
from facturador.core.errors import PaymentGatewayError, StateError, ValidationError
from facturador.schemas.models import (
    CardKind,
    CardPayment,
    CashPayment,
    DigitalWalletPayment,
    NegotiationState,
    PaymentSelection,
    TransferPayment,
)
from facturador.services.ports import BankVerifier, PaymentGateway
from facturador.utils.doc_helpers import generate_operation_id, quantize_money
from facturador.utils.signals import Signal

logger = logging.getLogger(__name__)

CREDIT_INSTALLMENTS = (1, 3, 6, 12)
CANCELLED_WALLET_STATUSES = {"rejected", "cancelled"}


class PollingHandle:
    """Caller-side view of a wallet QR operation and its polling task."""

    def __init__(self, operation_id: str, qr_payload: str, amount: Decimal):
        self.operation_id = operation_id
        self.qr_payload = qr_payload
        self.amount = amount
        self._cancelled = False
        self._task: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def done(self) -> bool:
        return self._task is None or self._task.done()

    def cancel(self) -> None:
        self._cancelled = True
        if self._task and not self._task.done():
            self._task.cancel()

    async def wait(self) -> None:
        """Wait for polling to finish (confirmed, expired or cancelled)."""
        if self._task is not None:
            await asyncio.wait({self._task})


class PaymentNegotiator:
    def __init__(
        self,
        gateway: PaymentGateway,
        bank_verifier: BankVerifier,
        poll_interval: Optional[float] = None,
        poll_max_seconds: Optional[float] = None,
    ):
        self.gateway = gateway
        self.bank_verifier = bank_verifier
        self.poll_interval = poll_interval if poll_interval is not None else settings.qr_poll_interval_seconds
        self.poll_max_seconds = (
            poll_max_seconds if poll_max_seconds is not None else settings.qr_poll_max_seconds
        )
        self.state = NegotiationState.NONE_SELECTED
        self.selection: Optional[PaymentSelection] = None
        self.payment_confirmed = Signal("payment_confirmed")
        self._handle: Optional[PollingHandle] = None

    @property
    def confirmed_payment(self) -> Optional[PaymentSelection]:
        if self.state == NegotiationState.CONFIRMED:
            return self.selection
        return None

    @property
    def polling_handle(self) -> Optional[PollingHandle]:
        return self._handle

    # ─────────────────────────────────────────
    # CASH / CARD (synchronous)
    # ─────────────────────────────────────────

    def select_cash(self, amount_due: Decimal, tendered: Decimal) -> CashPayment:
        due = quantize_money(amount_due)
        tendered = Decimal(str(tendered))
        if tendered < due:
            raise ValidationError("El monto recibido es menor al total a pagar", code="INSUFFICIENT_TENDER")
        self._discard()
        payment = CashPayment(amount=due, tendered=tendered, change=tendered - due)
        self._confirm(payment)
        return payment

    def select_card(
        self,
        amount_due: Decimal,
        kind: CardKind,
        network: str,
        installments: Optional[int] = None,
        last_digits: Optional[str] = None,
    ) -> CardPayment:
        if not network:
            raise ValidationError("Debe indicar la tarjeta")
        if kind == CardKind.DEBIT:
            if installments not in (None, 1):
                raise ValidationError("Las cuotas solo aplican a tarjetas de crédito")
            installments = None
        else:
            installments = installments or 1
            if installments not in CREDIT_INSTALLMENTS:
                raise ValidationError(f"Cuotas inválidas: {installments}. Válidas: {list(CREDIT_INSTALLMENTS)}")
        if last_digits and not (len(last_digits) == 4 and last_digits.isdigit()):
            raise ValidationError("Los últimos dígitos deben ser 4 números")

        self._discard()
        payment = CardPayment(
            amount=quantize_money(amount_due),
            kind=kind,
            network=network,
            installments=installments,
            last_digits=last_digits or None,
        )
        self._confirm(payment)
        return payment

    # ─────────────────────────────────────────
    # TRANSFER
    # ─────────────────────────────────────────

    def begin_transfer(self, amount_due: Decimal, bank_id: str, reference: Optional[str] = None) -> TransferPayment:
        if not bank_id:
            raise ValidationError("Debe seleccionar el banco")
        self._discard()
        payment = TransferPayment(amount=quantize_money(amount_due), bank_id=bank_id, reference=reference)
        self.selection = payment
        self.state = NegotiationState.AWAITING_CONFIRMATION
        logger.info(f"Awaiting transfer confirmation: bank={bank_id} amount={payment.amount}")
        return payment

    async def verify_transfer(self) -> TransferPayment:
        """One bank verification request. A negative answer keeps the transfer awaiting."""
        pending = self._awaiting(TransferPayment)
        found = await self.bank_verifier.verify_transfer(pending.bank_id, pending.amount, pending.reference)

        if self.selection is not pending or self.state != NegotiationState.AWAITING_CONFIRMATION:
            logger.warning(f"Transfer verification for bank={pending.bank_id} arrived after selection changed")
            raise StateError("La selección de pago cambió durante la verificación")
        if not found:
            raise PaymentGatewayError(
                "La transferencia no fue encontrada en el banco", code="TRANSFER_NOT_FOUND"
            )

        payment = pending.model_copy(update={"verified": True})
        self._confirm(payment)
        return payment

    def attest_transfer(self, reference: Optional[str] = None) -> TransferPayment:
        """Manual override: the operator attests the money was received."""
        pending = self._awaiting(TransferPayment)
        payment = pending.model_copy(update={"attested": True, "reference": reference or pending.reference})
        self._confirm(payment)
        return payment

    # ─────────────────────────────────────────
    # DIGITAL WALLET (QR + polling)
    # ─────────────────────────────────────────

    async def begin_digital_wallet(self, amount_due: Decimal) -> PollingHandle:
        self._discard()
        operation_id = generate_operation_id()
        pending = DigitalWalletPayment(amount=quantize_money(amount_due), operation_id=operation_id)
        self.selection = pending
        self.state = NegotiationState.AWAITING_CONFIRMATION

        try:
            operation = await self.gateway.create_qr_operation(pending.amount, operation_id)
        except Exception:
            if self.selection is pending:
                self.selection = None
                self.state = NegotiationState.NONE_SELECTED
            raise

        if self.selection is not pending:
            raise StateError("La selección de pago cambió mientras se generaba el QR")

        handle = PollingHandle(operation_id, operation.qr_payload, pending.amount)
        handle._task = asyncio.create_task(self._poll(handle), name=f"wallet-poll-{operation_id}")
        self._handle = handle
        logger.info(f"Wallet QR created: operation={operation_id} amount={pending.amount}")
        return handle

    async def _poll(self, handle: PollingHandle) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.poll_max_seconds

        while not handle.cancelled:
            await asyncio.sleep(self.poll_interval)
            if handle.cancelled:
                return
            if loop.time() >= deadline:
                if self._is_current(handle):
                    logger.warning(f"Wallet operation {handle.operation_id} expired without payment")
                    self.selection = None
                    self.state = NegotiationState.CANCELLED
                    self._handle = None
                return

            try:
                status = await self.gateway.poll_status(handle.operation_id)
            except Exception as e:
                logger.warning(f"Wallet poll error for {handle.operation_id}, will retry: {e}")
                continue

            if status.status in CANCELLED_WALLET_STATUSES:
                if self._is_current(handle):
                    logger.warning(f"Wallet operation {handle.operation_id} {status.status}")
                    self.selection = None
                    self.state = NegotiationState.CANCELLED
                    self._handle = None
                return
            if not status.paid:
                continue

            if not self._is_current(handle):
                logger.warning(f"Stale wallet confirmation ignored: {handle.operation_id}")
                return
            payment = self.selection.model_copy(update={"confirmed": True, "raw_confirmation": status.details})
            self._handle = None
            self._confirm(payment)
            return

    def _is_current(self, handle: PollingHandle) -> bool:
        return (
            not handle.cancelled
            and self.state == NegotiationState.AWAITING_CONFIRMATION
            and isinstance(self.selection, DigitalWalletPayment)
            and self.selection.operation_id == handle.operation_id
        )

    # ─────────────────────────────────────────
    # LIFECYCLE
    # ─────────────────────────────────────────

    def cancel(self) -> None:
        """Abandon the current selection."""
        self._discard()
        self.state = NegotiationState.CANCELLED

    def reset(self) -> None:
        self._discard()

    def close(self) -> None:
        self._stop_polling()

    def _awaiting(self, kind: type):
        if self.state != NegotiationState.AWAITING_CONFIRMATION or not isinstance(self.selection, kind):
            raise StateError("No hay un pago pendiente de confirmación de ese tipo")
        return self.selection

    def _stop_polling(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _discard(self) -> None:
        self._stop_polling()
        self.selection = None
        self.state = NegotiationState.NONE_SELECTED

    def _confirm(self, payment: PaymentSelection) -> None:
        self.selection = payment
        self.state = NegotiationState.CONFIRMED
        logger.info(f"Payment confirmed: method={payment.method} amount={payment.amount}")
        self.payment_confirmed.emit(payment)
