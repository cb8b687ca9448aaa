"""
FACTURADOR — Module 8: Payment Gateway Clients
httpx clients for the external confirmation of non-cash payments.

QrPaymentGateway (Mercado Pago):
  create  POST {base}/checkout/preferences  → init_point is the QR payload
  poll    GET  {base}/v1/payments/search?external_reference={operation_id}
          status "approved" → paid; "rejected"/"cancelled" → cancelled

BankTransferVerifier:
  POST {bank_api_url}/{bank_id}/transferencias/verificar
  body {"monto": ..., "referencia": ...} → {"encontrada": true|false}

Every failure surfaces as PaymentGatewayError. Nothing retries here: the
negotiator's polling loop is the retry.
"""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

import httpx

from facturador.core.config import settings
from facturador.core.errors import PaymentGatewayError
from facturador.schemas.models import GatewayPaymentStatus, QrOperation

logger = logging.getLogger(__name__)

QR_EXPIRATION_MINUTES = 30


def _json_or_error(response: httpx.Response, service: str) -> dict:
    try:
        data = response.json()
    except Exception:
        raise PaymentGatewayError(
            f"{service} retornó una respuesta no-JSON (HTTP {response.status_code}): {response.text[:200]}"
        )
    if response.status_code >= 400:
        message = response.text[:200]
        if isinstance(data, dict):
            message = data.get("message") or data.get("error") or message
        raise PaymentGatewayError(f"{service} respondió HTTP {response.status_code}: {message}")
    return data


class QrPaymentGateway:
    def __init__(self, base_url: str = None, access_token: str = None, timeout: float = None):
        self.base_url = (base_url or settings.payment_gateway_url).rstrip("/")
        self.access_token = access_token if access_token is not None else settings.payment_gateway_token
        self.timeout = timeout or settings.payment_gateway_timeout_seconds

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

    async def create_qr_operation(self, amount: Decimal, operation_id: str) -> QrOperation:
        expires = datetime.now(timezone.utc) + timedelta(minutes=QR_EXPIRATION_MINUTES)
        payload = {
            "items": [{"title": "Pago FACTURADOR", "quantity": 1, "unit_price": float(amount)}],
            "external_reference": operation_id,
            "payment_methods": {"excluded_payment_types": [{"id": "ticket"}, {"id": "atm"}]},
            "expires": True,
            "expiration_date_to": expires.isoformat(),
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/checkout/preferences", json=payload, headers=self._headers()
                )
        except httpx.HTTPError as e:
            raise PaymentGatewayError(f"No se pudo generar el QR de pago: {e}", code="QR_UNAVAILABLE")
        return self._parse_qr_response(response, operation_id, amount)

    def _parse_qr_response(self, response: httpx.Response, operation_id: str, amount: Decimal) -> QrOperation:
        data = _json_or_error(response, "Mercado Pago")
        qr_payload = data.get("init_point") or data.get("qr_data")
        if not qr_payload:
            raise PaymentGatewayError("Mercado Pago no devolvió datos para el QR", code="QR_UNAVAILABLE")
        return QrOperation(operation_id=operation_id, qr_payload=qr_payload, amount=amount)

    async def poll_status(self, operation_id: str) -> GatewayPaymentStatus:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(
                    f"{self.base_url}/v1/payments/search",
                    params={"external_reference": operation_id, "sort": "date_created", "criteria": "desc"},
                    headers=self._headers(),
                )
        except httpx.HTTPError as e:
            raise PaymentGatewayError(f"Error consultando el pago {operation_id}: {e}")
        return self._parse_status_response(response)

    def _parse_status_response(self, response: httpx.Response) -> GatewayPaymentStatus:
        data = _json_or_error(response, "Mercado Pago")
        results = (data.get("results") or []) if isinstance(data, dict) else []
        if not results:
            return GatewayPaymentStatus(paid=False, status="pending")

        approved = next((p for p in results if p.get("status") == "approved"), None)
        if approved:
            return GatewayPaymentStatus(
                paid=True,
                status="approved",
                details={
                    "payment_id": approved.get("id"),
                    "amount": approved.get("transaction_amount"),
                    "date_approved": approved.get("date_approved"),
                    "payment_method": approved.get("payment_method_id"),
                },
            )
        return GatewayPaymentStatus(paid=False, status=results[0].get("status", "pending"))


class BankTransferVerifier:
    def __init__(self, base_url: str = None, timeout: float = None):
        self.base_url = (base_url or settings.bank_api_url).rstrip("/")
        self.timeout = timeout or settings.bank_timeout_seconds

    async def verify_transfer(self, bank_id: str, amount: Decimal, reference: Optional[str]) -> bool:
        logger.info(f"Verifying transfer: bank={bank_id} amount={amount} ref={reference}")
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/{bank_id}/transferencias/verificar",
                    json={"monto": float(amount), "referencia": reference},
                )
        except httpx.TimeoutException:
            raise PaymentGatewayError(
                f"El banco no respondió en {self.timeout}s", code="BANK_TIMEOUT", status_code=504
            )
        except httpx.HTTPError as e:
            raise PaymentGatewayError(f"No se pudo conectar con el banco: {e}", code="BANK_UNAVAILABLE")
        return self._parse_verification(response)

    def _parse_verification(self, response: httpx.Response) -> bool:
        data = _json_or_error(response, "El banco")
        return bool(data.get("encontrada", False))


# Singleton instances
qr_payment_gateway = QrPaymentGateway()
bank_transfer_verifier = BankTransferVerifier()
