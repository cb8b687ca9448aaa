"""
FACTURADOR: Dependencias FastAPI
================================
Wires the engine's collaborators once per process and exposes them to the
routers through Depends().
"""
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from fastapi import Depends
from supabase import create_client

from facturador.core.config import StoreBackend, settings
from facturador.modules.checkout_session import CheckoutSession, SessionRegistry
from facturador.modules.draft_composer import DraftComposer
from facturador.modules.fiscal_authority import fiscal_authority_client
from facturador.modules.numbering import InMemorySequenceStore, NumberingSequencer
from facturador.modules.payment_gateway import bank_transfer_verifier, qr_payment_gateway
from facturador.modules.payment_negotiator import PaymentNegotiator
from facturador.modules.settlement import SettlementOrchestrator
from facturador.schemas.models import Branch, NotificationChannel, Operator
from facturador.services import memory_store, supabase_store
from facturador.services.email_service import EmailSender
from facturador.services.notification_service import NotificationGateway
from facturador.services.ports import (
    BankVerifier,
    CashRegister,
    Catalog,
    ClientDirectory,
    DocumentStore,
    FiscalAuthority,
    PaymentGateway,
    PaymentLedger,
    SequenceStore,
    StockKeeper,
)
from facturador.services.whatsapp_service import WhatsAppSender


@dataclass
class Engine:
    catalog: Catalog
    clients: ClientDirectory
    stock: StockKeeper
    ledger: PaymentLedger
    documents: DocumentStore
    sequences: SequenceStore
    fiscal_authority: FiscalAuthority
    payment_gateway: PaymentGateway
    bank_verifier: BankVerifier
    notifications: NotificationGateway
    cash_register: CashRegister = None
    sequencer: NumberingSequencer = None
    orchestrator: SettlementOrchestrator = None
    sessions: SessionRegistry = None

    def __post_init__(self):
        self.sequencer = self.sequencer or NumberingSequencer(self.sequences)
        self.orchestrator = self.orchestrator or SettlementOrchestrator(
            sequencer=self.sequencer,
            fiscal_authority=self.fiscal_authority,
            catalog=self.catalog,
            stock=self.stock,
            ledger=self.ledger,
            documents=self.documents,
            notifications=self.notifications,
            cash_register=self.cash_register,
        )
        self.sessions = self.sessions or SessionRegistry(self.new_session)

    def new_session(self, branch: Branch, operator: Operator) -> CheckoutSession:
        return CheckoutSession(
            composer=DraftComposer(self.catalog, branch, operator),
            negotiator=PaymentNegotiator(self.payment_gateway, self.bank_verifier),
        )


def build_engine(supabase: Any = None) -> Engine:
    """Build the engine for the configured store backend."""
    notifications = NotificationGateway({
        NotificationChannel.EMAIL: EmailSender(),
        NotificationChannel.WHATSAPP: WhatsAppSender(),
    })
    remote = dict(
        fiscal_authority=fiscal_authority_client,
        payment_gateway=qr_payment_gateway,
        bank_verifier=bank_transfer_verifier,
        notifications=notifications,
    )

    if settings.store_backend == StoreBackend.SUPABASE:
        db = supabase or get_supabase()
        return Engine(
            catalog=supabase_store.SupabaseCatalog(db),
            clients=supabase_store.SupabaseClientDirectory(db),
            stock=supabase_store.SupabaseStockKeeper(db),
            ledger=supabase_store.SupabasePaymentLedger(db),
            documents=supabase_store.SupabaseDocumentStore(db),
            sequences=supabase_store.SupabaseSequenceStore(db),
            cash_register=supabase_store.SupabaseCashRegister(db) if settings.require_open_register else None,
            **remote,
        )

    # No cash-desk screens in the memory backend, so registers are not checked.
    catalog = memory_store.InMemoryCatalog()
    return Engine(
        catalog=catalog,
        clients=memory_store.InMemoryClientDirectory(),
        stock=memory_store.InMemoryStockKeeper(catalog),
        ledger=memory_store.InMemoryPaymentLedger(),
        documents=memory_store.InMemoryDocumentStore(),
        sequences=InMemorySequenceStore(),
        **remote,
    )


# ── Singletons ──

@lru_cache()
def get_supabase():
    """Supabase client singleton (service role)."""
    return create_client(settings.supabase_url, settings.supabase_service_role_key)


@lru_cache()
def get_engine() -> Engine:
    return build_engine()


def get_sessions(engine: Engine = Depends(get_engine)) -> SessionRegistry:
    return engine.sessions
