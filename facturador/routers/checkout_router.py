"""
checkout_router.py — Checkout (facturador) endpoints.
Endpoints:
  POST   /api/v1/sessions                                  — Abrir sesión de facturación
  GET    /api/v1/sessions/{id}                             — Estado del borrador, totales y pago
  DELETE /api/v1/sessions/{id}                             — Cerrar sesión (cancela polling QR)
  PUT    /api/v1/sessions/{id}/client                      — Seleccionar cliente (vacío = Consumidor Final)
  PUT    /api/v1/sessions/{id}/document-type               — Tipo de comprobante (A/B/C/X/P)
  POST   /api/v1/sessions/{id}/items                       — Agregar por código o código de barras
  POST   /api/v1/sessions/{id}/items/manual                — Agregar ítem manual
  PATCH  /api/v1/sessions/{id}/items/{item_id}             — Cantidad / precio / alícuota
  POST   /api/v1/sessions/{id}/items/{item_id}/restore-price
  DELETE /api/v1/sessions/{id}/items/{item_id}
  PUT    /api/v1/sessions/{id}/adjustment                  — Descuento / recargo
  PUT    /api/v1/sessions/{id}/tax                         — Aplicar IVA
  POST   /api/v1/sessions/{id}/quotes/{quote_id}/load      — Convertir presupuesto en factura
  POST   /api/v1/sessions/{id}/reset                       — Nueva venta
  POST   /api/v1/sessions/{id}/payment/{cash|card|transfer|wallet}
  POST   /api/v1/sessions/{id}/payment/transfer/{verify|attest}
  DELETE /api/v1/sessions/{id}/payment                     — Cancelar pago
  POST   /api/v1/sessions/{id}/settle                      — Emitir comprobante
  POST   /api/v1/sessions/{id}/retry                       — Reintentar tras fallo
  POST   /api/v1/sessions/{id}/settle-offline              — Facturar sin ARCA
  GET    /api/v1/products?q=                               — Buscar productos
  GET    /api/v1/clients?q=  GET /api/v1/clients/{identifier}  POST /api/v1/clients
  GET    /api/v1/quotes?branch_id=                         — Presupuestos guardados
"""

import base64
import logging
from io import BytesIO

import qrcode
from fastapi import APIRouter, Depends, Query

from facturador.core.errors import NotFoundError
from facturador.dependencies import Engine, get_engine
from facturador.modules.checkout_session import CheckoutSession
from facturador.schemas.models import (
    AddItemRequest,
    AdjustmentRequest,
    CardPaymentRequest,
    CashPaymentRequest,
    Client,
    ClientCreateRequest,
    ClientSelectRequest,
    CommittedDocument,
    DocumentTypeRequest,
    ManualItemRequest,
    PaymentStateResponse,
    Product,
    SessionCreateRequest,
    SessionResponse,
    SettleRequest,
    SettleResponse,
    TaxRequest,
    TransferAttestRequest,
    TransferPaymentRequest,
    UpdateItemRequest,
    WalletResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1", tags=["facturador"])


# ── Helpers ──

def get_session(session_id: str, engine: Engine = Depends(get_engine)) -> CheckoutSession:
    return engine.sessions.get(session_id)


def _session_response(session: CheckoutSession) -> SessionResponse:
    negotiator = session.negotiator
    handle = negotiator.polling_handle
    return SessionResponse(
        session_id=session.id,
        draft=session.draft,
        totals=session.composer.totals.rounded(),
        payment=PaymentStateResponse(
            state=negotiator.state,
            payment=negotiator.selection,
            operation_id=handle.operation_id if handle else None,
        ),
    )


def _qr_png(data_string: str) -> bytes:
    qr = qrcode.QRCode(version=None, error_correction=qrcode.constants.ERROR_CORRECT_M, box_size=10, border=2)
    qr.add_data(data_string)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffer = BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


def _settle_response(session: CheckoutSession, document: CommittedDocument) -> SettleResponse:
    return SettleResponse(document=document, draft_state=session.draft.state)


# ── Sessions ──

@router.post("/sessions", response_model=SessionResponse, status_code=201)
async def open_session(body: SessionCreateRequest, engine: Engine = Depends(get_engine)):
    session = engine.sessions.open(body.branch, body.operator)
    return _session_response(session)


@router.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session_state(session: CheckoutSession = Depends(get_session)):
    return _session_response(session)


@router.delete("/sessions/{session_id}")
async def close_session(session_id: str, engine: Engine = Depends(get_engine)):
    engine.sessions.close(session_id)
    return {"success": True}


# ── Composition ──

@router.put("/sessions/{session_id}/client", response_model=SessionResponse)
async def select_client(
    body: ClientSelectRequest,
    session: CheckoutSession = Depends(get_session),
    engine: Engine = Depends(get_engine),
):
    client = None
    identifier = body.client_id or body.identifier
    if identifier:
        client = engine.clients.find_by_identifier(identifier)
        if client is None:
            raise NotFoundError(f"Cliente no encontrado: {identifier}", code="CLIENT_NOT_FOUND")
    session.composer.set_client(client)
    return _session_response(session)


@router.put("/sessions/{session_id}/document-type", response_model=SessionResponse)
async def set_document_type(body: DocumentTypeRequest, session: CheckoutSession = Depends(get_session)):
    session.composer.set_document_type(body.document_type)
    return _session_response(session)


@router.post("/sessions/{session_id}/items", response_model=SessionResponse)
async def add_item(body: AddItemRequest, session: CheckoutSession = Depends(get_session)):
    session.composer.add_by_code(body.code, body.quantity)
    return _session_response(session)


@router.post("/sessions/{session_id}/items/manual", response_model=SessionResponse)
async def add_manual_item(body: ManualItemRequest, session: CheckoutSession = Depends(get_session)):
    session.composer.add_manual_item(
        name=body.name, price=body.price, quantity=body.quantity, tax_rate=body.tax_rate, code=body.code,
    )
    return _session_response(session)


@router.patch("/sessions/{session_id}/items/{item_id}", response_model=SessionResponse)
async def update_item(item_id: str, body: UpdateItemRequest, session: CheckoutSession = Depends(get_session)):
    session.composer.update_line_item(item_id, quantity=body.quantity, price=body.price, tax_rate=body.tax_rate)
    return _session_response(session)


@router.post("/sessions/{session_id}/items/{item_id}/restore-price", response_model=SessionResponse)
async def restore_price(item_id: str, session: CheckoutSession = Depends(get_session)):
    session.composer.restore_price(item_id)
    return _session_response(session)


@router.delete("/sessions/{session_id}/items/{item_id}", response_model=SessionResponse)
async def remove_item(item_id: str, session: CheckoutSession = Depends(get_session)):
    session.composer.remove_line_item(item_id)
    return _session_response(session)


@router.put("/sessions/{session_id}/adjustment", response_model=SessionResponse)
async def set_adjustment(body: AdjustmentRequest, session: CheckoutSession = Depends(get_session)):
    if body.polarity is not None:
        session.composer.set_adjustment(body.polarity, body.percentage)
    else:
        session.composer.set_adjustment_input(body.value)
    return _session_response(session)


@router.put("/sessions/{session_id}/tax", response_model=SessionResponse)
async def set_tax(body: TaxRequest, session: CheckoutSession = Depends(get_session)):
    session.composer.set_tax_applicability(body.apply_tax)
    return _session_response(session)


@router.post("/sessions/{session_id}/quotes/{quote_id}/load", response_model=SessionResponse)
async def load_quote(
    quote_id: str,
    session: CheckoutSession = Depends(get_session),
    engine: Engine = Depends(get_engine),
):
    quote = engine.documents.get(quote_id)
    if quote is None:
        raise NotFoundError(f"Presupuesto no encontrado: {quote_id}", code="QUOTE_NOT_FOUND")
    session.composer.load_quote(quote)
    session.negotiator.reset()
    return _session_response(session)


@router.post("/sessions/{session_id}/reset", response_model=SessionResponse)
async def reset_session(session: CheckoutSession = Depends(get_session)):
    session.new_transaction()
    return _session_response(session)


# ── Payment ──

@router.post("/sessions/{session_id}/payment/cash", response_model=SessionResponse)
async def pay_cash(body: CashPaymentRequest, session: CheckoutSession = Depends(get_session)):
    session.negotiator.select_cash(session.amount_due, body.tendered)
    return _session_response(session)


@router.post("/sessions/{session_id}/payment/card", response_model=SessionResponse)
async def pay_card(body: CardPaymentRequest, session: CheckoutSession = Depends(get_session)):
    session.negotiator.select_card(
        session.amount_due, body.kind, body.network,
        installments=body.installments, last_digits=body.last_digits,
    )
    return _session_response(session)


@router.post("/sessions/{session_id}/payment/transfer", response_model=SessionResponse)
async def begin_transfer(body: TransferPaymentRequest, session: CheckoutSession = Depends(get_session)):
    session.negotiator.begin_transfer(session.amount_due, body.bank_id, body.reference)
    return _session_response(session)


@router.post("/sessions/{session_id}/payment/transfer/verify", response_model=SessionResponse)
async def verify_transfer(session: CheckoutSession = Depends(get_session)):
    await session.negotiator.verify_transfer()
    return _session_response(session)


@router.post("/sessions/{session_id}/payment/transfer/attest", response_model=SessionResponse)
async def attest_transfer(body: TransferAttestRequest, session: CheckoutSession = Depends(get_session)):
    session.negotiator.attest_transfer(body.reference)
    return _session_response(session)


@router.post("/sessions/{session_id}/payment/wallet", response_model=WalletResponse)
async def begin_wallet(session: CheckoutSession = Depends(get_session)):
    handle = await session.negotiator.begin_digital_wallet(session.amount_due)
    return WalletResponse(
        operation_id=handle.operation_id,
        qr_payload=handle.qr_payload,
        qr_png_base64=base64.b64encode(_qr_png(handle.qr_payload)).decode("ascii"),
        amount=handle.amount,
    )


@router.delete("/sessions/{session_id}/payment", response_model=SessionResponse)
async def cancel_payment(session: CheckoutSession = Depends(get_session)):
    session.negotiator.cancel()
    return _session_response(session)


# ── Settlement ──

@router.post("/sessions/{session_id}/settle", response_model=SettleResponse)
async def settle(
    body: SettleRequest,
    session: CheckoutSession = Depends(get_session),
    engine: Engine = Depends(get_engine),
):
    document = await session.settle(
        engine.orchestrator, body.notify, quote_name=body.quote_name, valid_until=body.valid_until,
    )
    return _settle_response(session, document)


@router.post("/sessions/{session_id}/retry", response_model=SettleResponse)
async def retry(
    body: SettleRequest,
    session: CheckoutSession = Depends(get_session),
    engine: Engine = Depends(get_engine),
):
    document = await session.retry(engine.orchestrator, body.notify)
    return _settle_response(session, document)


@router.post("/sessions/{session_id}/settle-offline", response_model=SettleResponse)
async def settle_offline(
    body: SettleRequest,
    session: CheckoutSession = Depends(get_session),
    engine: Engine = Depends(get_engine),
):
    document = await session.settle_offline(engine.orchestrator, body.notify)
    return _settle_response(session, document)


# ── Catalog & clients ──

@router.get("/products", response_model=list[Product])
async def search_products(q: str = Query("", min_length=0), limit: int = Query(20, ge=1, le=100),
                          engine: Engine = Depends(get_engine)):
    return engine.catalog.search_by_name(q, limit)


@router.get("/clients", response_model=list[Client])
async def search_clients(q: str = Query(""), limit: int = Query(20, ge=1, le=100),
                         engine: Engine = Depends(get_engine)):
    return engine.clients.search(q, limit)


@router.get("/clients/{identifier}", response_model=Client)
async def get_client(identifier: str, engine: Engine = Depends(get_engine)):
    client = engine.clients.find_by_identifier(identifier)
    if client is None:
        raise NotFoundError(f"Cliente no encontrado: {identifier}", code="CLIENT_NOT_FOUND")
    return client


@router.post("/clients", response_model=Client, status_code=201)
async def create_client(body: ClientCreateRequest, engine: Engine = Depends(get_engine)):
    return engine.clients.create(Client(**body.model_dump()))


@router.get("/quotes", response_model=list[CommittedDocument])
async def list_quotes(branch_id: str, engine: Engine = Depends(get_engine)):
    return engine.documents.list_quotes(branch_id)
