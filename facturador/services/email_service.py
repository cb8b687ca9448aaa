"""
FACTURADOR: Envío de comprobantes por email via Google Script
=============================================================
POSTs the rendered comprobante summary to the configured script endpoint.
Raises on failure; the notification gateway decides what to do with it.
"""
import logging

import httpx

from facturador.core.config import settings
from facturador.schemas.models import CommittedDocument, DocumentType

logger = logging.getLogger(__name__)

DOCUMENT_NAMES = {
    DocumentType.FACTURA_A: "Factura A",
    DocumentType.FACTURA_B: "Factura B",
    DocumentType.FACTURA_C: "Factura C",
    DocumentType.FACTURA_X: "Comprobante X",
    DocumentType.PRESUPUESTO: "Presupuesto",
}


class EmailDeliveryError(Exception):
    pass


class EmailSender:
    def __init__(self, script_url: str = None, timeout: float = 30):
        self.script_url = script_url if script_url is not None else settings.email_script_url
        self.timeout = timeout

    async def send(self, document: CommittedDocument, address: str) -> None:
        if not self.script_url:
            raise EmailDeliveryError("Email no configurado (FACTURADOR_EMAIL_SCRIPT_URL)")

        name = DOCUMENT_NAMES.get(document.document_type, "Comprobante")
        payload = {
            "to": address,
            "subject": f"{name} {document.formatted_number} - {document.branch.name or 'FACTURADOR'}",
            "html": build_html(document, name),
        }

        async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
            resp = await client.post(self.script_url, json=payload)
        try:
            result = resp.json()
        except ValueError:
            raise EmailDeliveryError(f"Respuesta inválida del servicio de email (HTTP {resp.status_code})")
        if not result.get("success"):
            raise EmailDeliveryError(f"Email falló: {result.get('error', 'sin detalle')}")
        logger.info(f"Email enviado: {address} | {document.formatted_number}")


def build_html(document: CommittedDocument, name: str) -> str:
    totals = document.totals
    rows = "".join(
        f"<tr><td>{item.quantity}</td><td>{item.name}</td>"
        f"<td style=\"text-align:right\">${item.subtotal:.2f}</td></tr>"
        for item in document.items
    )
    cae = ""
    if document.authorization_code:
        cae = (f"<p>CAE: <strong>{document.authorization_code}</strong> "
               f"(vto. {document.authorization.authorization_expiry})</p>")
    return f"""
    <div style="font-family:Arial,sans-serif;max-width:600px;margin:0 auto;padding:20px">
        <h2 style="margin:0">{name} {document.formatted_number}</h2>
        <p>Estimado/a <strong>{document.client.name}</strong>, adjuntamos el detalle de su comprobante.</p>
        <table style="width:100%;border-collapse:collapse">{rows}</table>
        <p>Neto: ${totals.adjusted_net:.2f} | IVA: ${totals.tax_total:.2f}</p>
        <p><strong>Total: ${totals.grand_total:.2f}</strong></p>
        {cae}
    </div>
    """
