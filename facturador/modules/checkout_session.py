"""
FACTURADOR — Module 9: Checkout Sessions
One session = one operator at one branch composing one draft at a time.
The session is the explicit handle the HTTP layer passes to the engine.

Sessions live in memory. A background task (see main.py lifespan) calls
SessionRegistry.cleanup_stale() to drop sessions inactive for longer than
session_max_inactive_hours; closing a session stops any wallet polling.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Iterable, Optional
from uuid import uuid4

from facturador.core.config import settings
from facturador.core.errors import NotFoundError
from facturador.modules.draft_composer import DraftComposer
from facturador.modules.payment_negotiator import PaymentNegotiator
from facturador.modules.settlement import SettlementOrchestrator
from facturador.schemas.models import (
    Branch,
    CommittedDocument,
    DraftState,
    InvoiceDraft,
    NotificationTarget,
    Operator,
)

logger = logging.getLogger(__name__)


class CheckoutSession:
    def __init__(self, composer: DraftComposer, negotiator: PaymentNegotiator, session_id: str = None):
        self.id = session_id or uuid4().hex
        self.composer = composer
        self.negotiator = negotiator
        self.created_at = datetime.now(timezone.utc)
        self.last_activity = self.created_at
        self.last_document: Optional[CommittedDocument] = None

    @property
    def draft(self) -> InvoiceDraft:
        return self.composer.draft

    @property
    def amount_due(self) -> Decimal:
        return self.composer.totals.rounded().grand_total

    def touch(self) -> None:
        self.last_activity = datetime.now(timezone.utc)

    async def settle(
        self,
        orchestrator: SettlementOrchestrator,
        notify: Iterable[NotificationTarget] = (),
        quote_name: Optional[str] = None,
        valid_until: Optional[date] = None,
    ) -> CommittedDocument:
        self.touch()
        document = await orchestrator.settle(
            self.draft, self.negotiator.confirmed_payment, notify, quote_name, valid_until
        )
        return self._committed(document)

    async def retry(self, orchestrator: SettlementOrchestrator,
                    notify: Iterable[NotificationTarget] = ()) -> CommittedDocument:
        self.touch()
        document = await orchestrator.retry(self.draft, self.negotiator.confirmed_payment, notify)
        return self._committed(document)

    async def settle_offline(self, orchestrator: SettlementOrchestrator,
                             notify: Iterable[NotificationTarget] = ()) -> CommittedDocument:
        self.touch()
        document = await orchestrator.settle_offline(self.draft, self.negotiator.confirmed_payment, notify)
        return self._committed(document)

    def new_transaction(self) -> InvoiceDraft:
        """Clear draft and payment after a commit (or to abandon the sale)."""
        self.touch()
        draft = self.composer.reset()
        self.negotiator.reset()
        return draft

    def close(self) -> None:
        draft = self.draft
        if draft.state == DraftState.FAILED and draft.issued_number is not None:
            authorization = draft.issued_authorization
            logger.error(
                f"Session {self.id} closed with uncommitted {draft.document_type.value} "
                f"number {draft.issued_number} (draft {draft.id}, "
                f"CAE {authorization.authorization_code if authorization else '-'})"
            )
        self.negotiator.close()

    def _committed(self, document: CommittedDocument) -> CommittedDocument:
        self.last_document = document
        self.negotiator.reset()
        return document


SessionFactory = Callable[[Branch, Operator], CheckoutSession]


class SessionRegistry:
    def __init__(self, factory: SessionFactory, max_inactive_hours: float = None):
        self.factory = factory
        self.max_inactive = timedelta(
            hours=max_inactive_hours if max_inactive_hours is not None else settings.session_max_inactive_hours
        )
        self._sessions: dict[str, CheckoutSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def open(self, branch: Branch, operator: Operator) -> CheckoutSession:
        session = self.factory(branch, operator)
        self._sessions[session.id] = session
        logger.info(f"Checkout session opened: {session.id} branch={branch.id} operator={operator.id}")
        return session

    def get(self, session_id: str) -> CheckoutSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError("Sesión de facturación no encontrada o expirada", code="SESSION_NOT_FOUND")
        session.touch()
        return session

    def close(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            raise NotFoundError("Sesión de facturación no encontrada o expirada", code="SESSION_NOT_FOUND")
        session.close()
        logger.info(f"Checkout session closed: {session_id}")

    def cleanup_stale(self, now: datetime = None) -> int:
        """Close sessions inactive longer than the limit. Returns how many were removed."""
        now = now or datetime.now(timezone.utc)
        stale = [sid for sid, s in self._sessions.items() if now - s.last_activity > self.max_inactive]
        for sid in stale:
            self._sessions.pop(sid).close()
        if stale:
            logger.info(f"Cleaned {len(stale)} stale checkout sessions")
        return len(stale)

    def close_all(self) -> None:
        for session in self._sessions.values():
            session.close()
        self._sessions.clear()
