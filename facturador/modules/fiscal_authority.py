"""
FACTURADOR — Module 7: Fiscal Authority Client
Requests electronic authorization (CAE) for fiscal documents A/B/C from the
ARCA gateway.

Flow:
1. build_authorization_request() maps a draft + rounded totals + reserved
   number into ARCA codes (document type, VAT rates, tax condition)
2. POST the request to the `autorizar` endpoint with the API key
3. Parse response: CAE + expiry (authorized) or error/código (rejected)

Transport failures (timeout, connection, 5xx, non-JSON) raise
ExternalAuthorityError after the configured attempts. Business rejections
come back as FiscalAuthorizationResult(success=False) so the caller can
decide what to do with the error code.

ARCA Autorizar Endpoint:
- URL: POST /wsfev1/comprobantes
- Headers: Authorization: Bearer {api_key}, Content-Type: application/json
- Body: {
    "comprobante": {"tipo": 1|6|11, "punto_venta": 1, "numero": 42,
                    "concepto": 1, "fecha_emision": "YYYY-MM-DD"},
    "cliente": {"tipo_documento": 80|96|99, "documento": "...",
                "nombre": "...", "condicion_iva": 1..7},
    "items": [...],
    "importes": {"neto_gravado": ..., "iva": ..., "total": ...},
    "alicuotas": [{"id": 5, "base_imponible": ..., "importe": ...}],
    "metodo_pago": "EFECTIVO"
  }
- Response (success): {"resultado": "A", "cae": "...", "fechaVencimiento": "YYYY-MM-DD",
                       "numeroComprobante": 42}
- Response (rejected): {"resultado": "R", "error": "...", "codigo": "03"}
"""

import asyncio
import logging
from datetime import date
from decimal import Decimal
from typing import Optional

import httpx

from facturador.core.config import get_arca_url, settings
from facturador.core.errors import ExternalAuthorityError, ValidationError
from facturador.schemas.models import (
    Client,
    DocumentType,
    FiscalAuthorizationRequest,
    FiscalAuthorizationResult,
    FiscalItem,
    InvoiceDraft,
    PaymentSelection,
    TaxCondition,
    Totals,
    VatBreakdown,
)
from facturador.modules.totals import adjustment_factor, tax_by_rate
from facturador.utils.doc_helpers import current_ar_datetime, normalize_cuit, quantize_money

logger = logging.getLogger(__name__)

# ARCA comprobante codes
DOCUMENT_TYPE_CODES: dict[DocumentType, int] = {
    DocumentType.FACTURA_A: 1,
    DocumentType.FACTURA_B: 6,
    DocumentType.FACTURA_C: 11,
}

# Alícuotas IVA → ARCA code
VAT_RATE_CODES: dict[Decimal, int] = {
    Decimal("0"): 3,
    Decimal("10.5"): 4,
    Decimal("21"): 5,
    Decimal("27"): 6,
}

TAX_CONDITION_CODES: dict[TaxCondition, int] = {
    TaxCondition.RESPONSABLE_INSCRIPTO: 1,
    TaxCondition.RESPONSABLE_NO_INSCRIPTO: 2,
    TaxCondition.EXENTO: 3,
    TaxCondition.MONOTRIBUTISTA: 4,
    TaxCondition.CONSUMIDOR_FINAL: 5,
    TaxCondition.NO_ALCANZADO: 7,
    TaxCondition.SUJETO_NO_CATEGORIZADO: 0,
}

# Client identification types
DOC_TYPE_CUIT = 80
DOC_TYPE_DNI = 96
DOC_TYPE_NONE = 99

PAYMENT_METHOD_LABELS = {
    "cash": "EFECTIVO",
    "card": "TARJETA",
    "transfer": "TRANSFERENCIA",
    "digital_wallet": "MERCADO_PAGO",
}

CONCEPT_PRODUCTS = 1

# Rejections that mean "this number is already taken"
NUMBER_IN_USE_CODES = {"02", "03"}

AUTHORITY_ERROR_MESSAGES = {
    "01": "La CUIT informada no existe en los padrones de ARCA",
    "02": "El comprobante ya fue autorizado anteriormente",
    "03": "La numeración del comprobante ya existe",
    "04": "El punto de venta no se encuentra autorizado",
    "05": "La fecha del comprobante es anterior a la fecha actual",
    "06": "El formato del CAE devuelto es inválido",
    "07": "No se pudo establecer conexión con ARCA",
    "08": "Error en el certificado digital",
    "09": "Los importes informados no son válidos",
    "10": "La CUIT emisora no está autorizada para emitir este tipo de comprobante",
}


def describe_error(error_code: Optional[str]) -> str:
    return AUTHORITY_ERROR_MESSAGES.get(error_code or "", f"Error no especificado (código: {error_code})")


def client_document_type(client: Client) -> int:
    if client.is_final_consumer or normalize_cuit(client.document).strip("0") == "":
        return DOC_TYPE_NONE
    if len(normalize_cuit(client.document)) == 11:
        return DOC_TYPE_CUIT
    return DOC_TYPE_DNI


def vat_code(rate: Decimal) -> int:
    return VAT_RATE_CODES.get(Decimal(rate).normalize(), VAT_RATE_CODES[Decimal("21")])


def build_authorization_request(
    draft: InvoiceDraft,
    totals: Totals,
    number: int,
    payment: Optional[PaymentSelection] = None,
    issue_date: Optional[date] = None,
) -> FiscalAuthorizationRequest:
    """Map a draft into an ARCA authorization request. `totals` must be the rounded totals."""
    arca_code = DOCUMENT_TYPE_CODES.get(draft.document_type)
    if arca_code is None:
        raise ValidationError(f"El tipo {draft.document_type.value} no requiere autorización fiscal")

    client = draft.resolved_client
    factor = 1 + adjustment_factor(draft.adjustment)

    breakdown = []
    if draft.apply_tax:
        bases: dict[Decimal, Decimal] = {}
        for item in draft.items:
            bases[item.tax_rate] = bases.get(item.tax_rate, Decimal("0")) + item.subtotal
        for rate, amount in tax_by_rate(draft.items).items():
            breakdown.append(VatBreakdown(
                vat_code=vat_code(rate),
                base=quantize_money(bases[rate] * factor),
                amount=quantize_money(amount * factor),
            ))

    return FiscalAuthorizationRequest(
        document_type=draft.document_type,
        arca_document_code=arca_code,
        point_of_sale=int(draft.branch.code),
        number=number,
        issue_date=issue_date or current_ar_datetime().date(),
        client_document_type=client_document_type(client),
        client_document=normalize_cuit(client.document) or "0",
        client_name=client.name,
        client_tax_condition=TAX_CONDITION_CODES.get(client.tax_condition, 5),
        items=[
            FiscalItem(
                code=item.code,
                description=item.name,
                quantity=item.quantity,
                unit_price=quantize_money(item.unit_price),
                subtotal=quantize_money(item.subtotal),
                vat_code=vat_code(item.tax_rate),
            )
            for item in draft.items
        ],
        net=totals.adjusted_net,
        vat=totals.tax_total,
        total=totals.grand_total,
        vat_breakdown=breakdown,
        payment_method=payment.method if payment else "cash",
    )


class FiscalAuthorityClient:
    """
    httpx client for the ARCA authorization gateway.

    Usage:
        client = FiscalAuthorityClient()
        result = await client.authorize(request)
        if result.success: result.authorization_code
    """

    RETRY_DELAY_SECONDS = 1

    def __init__(self, api_key: str = None, timeout: float = None, max_attempts: int = None,
                 environment=None):
        self.api_key = api_key if api_key is not None else settings.arca_api_key
        self.timeout = timeout or settings.fiscal_timeout_seconds
        self.max_attempts = max_attempts or settings.fiscal_max_attempts
        self.environment = environment

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    @staticmethod
    def to_payload(request: FiscalAuthorizationRequest) -> dict:
        return {
            "comprobante": {
                "tipo": request.arca_document_code,
                "punto_venta": request.point_of_sale,
                "numero": request.number,
                "concepto": CONCEPT_PRODUCTS,
                "fecha_emision": request.issue_date.isoformat(),
            },
            "cliente": {
                "tipo_documento": request.client_document_type,
                "documento": request.client_document,
                "nombre": request.client_name,
                "condicion_iva": request.client_tax_condition,
            },
            "items": [
                {
                    "producto": {"descripcion": item.description, "codigo": item.code, "unidad": "unidades"},
                    "cantidad": item.quantity,
                    "precio_unitario": float(item.unit_price),
                    "subtotal": float(item.subtotal),
                    "alicuota": item.vat_code,
                }
                for item in request.items
            ],
            "importes": {
                "neto_gravado": float(request.net),
                "iva": float(request.vat),
                "total": float(request.total),
            },
            "alicuotas": [
                {"id": v.vat_code, "base_imponible": float(v.base), "importe": float(v.amount)}
                for v in request.vat_breakdown
            ],
            "metodo_pago": PAYMENT_METHOD_LABELS.get(request.payment_method, "EFECTIVO"),
        }

    async def authorize(self, request: FiscalAuthorizationRequest) -> FiscalAuthorizationResult:
        url = get_arca_url("autorizar", self.environment)
        payload = self.to_payload(request)

        logger.info(
            f"Requesting CAE: type={request.document_type.value}, "
            f"pos={request.point_of_sale}, number={request.number}, total={request.total}"
        )

        last_error = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, json=payload, headers=self._headers())
                return self._parse_response(response, request.number)

            except ExternalAuthorityError as e:
                if e.connection_error:
                    last_error = e
                    logger.warning(f"ARCA unavailable on attempt {attempt}/{self.max_attempts}: {e.message}")
                else:
                    raise

            except httpx.TimeoutException:
                last_error = ExternalAuthorityError(
                    f"Timeout en autorización ARCA (intento {attempt}/{self.max_attempts}). "
                    f"ARCA no respondió en {self.timeout}s.",
                    code="AUTHORITY_TIMEOUT", status_code=504, connection_error=True,
                )
                logger.warning(f"Timeout on attempt {attempt}/{self.max_attempts}")

            except httpx.HTTPError as e:
                last_error = ExternalAuthorityError(
                    f"No se pudo conectar con ARCA (intento {attempt}/{self.max_attempts}).",
                    code="AUTHORITY_UNREACHABLE", connection_error=True,
                )
                logger.warning(f"Connection error on attempt {attempt}: {e}")

            if attempt < self.max_attempts:
                delay = min(8, self.RETRY_DELAY_SECONDS * 2 ** (attempt - 1))
                logger.info(f"Retrying ARCA in {delay}s...")
                await asyncio.sleep(delay)

        raise last_error

    def _parse_response(self, response: httpx.Response, number: int) -> FiscalAuthorizationResult:
        """Parse the ARCA response into a FiscalAuthorizationResult."""
        try:
            data = response.json()
        except Exception:
            raise ExternalAuthorityError(
                f"ARCA retornó una respuesta no-JSON (HTTP {response.status_code}). "
                f"Respuesta: {response.text[:300]}",
                code="AUTHORITY_BAD_RESPONSE",
                connection_error=response.status_code >= 500,
            )

        if response.status_code >= 500:
            raise ExternalAuthorityError(
                f"Error de ARCA (HTTP {response.status_code}): {data.get('error', response.text[:300])}",
                code="AUTHORITY_UNAVAILABLE", connection_error=True, response=data,
            )
        if response.status_code == 401:
            raise ExternalAuthorityError(
                "API key de ARCA inválida o vencida.",
                code="AUTHORITY_UNAUTHORIZED", status_code=502, response=data,
            )

        cae = data.get("cae")
        if response.status_code == 200 and cae and data.get("resultado", "A") == "A":
            expiry = data.get("fechaVencimiento") or data.get("vencimiento_cae")
            logger.info(f"CAE granted: number={number}, cae={cae}")
            return FiscalAuthorizationResult(
                success=True,
                number=data.get("numeroComprobante", number),
                authorization_code=str(cae),
                authorization_expiry=date.fromisoformat(expiry) if expiry else None,
                raw_response=data,
            )

        error_code = data.get("codigo")
        error = data.get("error") or describe_error(error_code)
        logger.warning(f"ARCA rejected number={number}: code={error_code} error={error}")
        return FiscalAuthorizationResult(
            success=False,
            number=number,
            error=error,
            error_code=str(error_code) if error_code is not None else None,
            raw_response=data,
        )

    async def last_authorized_number(self, document_type: DocumentType, point_of_sale: int) -> int:
        url = get_arca_url("ultimo_numero", self.environment)
        params = {"tipo": DOCUMENT_TYPE_CODES[document_type], "punto_venta": point_of_sale}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(url, params=params, headers=self._headers())
            response.raise_for_status()
            return int(response.json().get("numero", 0))
        except httpx.HTTPError as e:
            raise ExternalAuthorityError(
                f"No se pudo obtener el último número autorizado: {e}",
                code="AUTHORITY_UNREACHABLE", connection_error=True,
            )


# Singleton instance
fiscal_authority_client = FiscalAuthorityClient()
