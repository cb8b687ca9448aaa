"""
whatsapp_service.py — WhatsApp Cloud API text delivery of comprobantes.

Requires WhatsApp Business API credentials (Meta Business account):
- phone_number_id: from Meta Business dashboard
- access_token: permanent or long-lived token
"""

import logging

import httpx

from facturador.core.config import settings
from facturador.schemas.models import CommittedDocument

logger = logging.getLogger(__name__)

WHATSAPP_API_BASE = "https://graph.facebook.com/v21.0"


class WhatsAppDeliveryError(Exception):
    pass


class WhatsAppSender:
    def __init__(self, phone_number_id: str = None, access_token: str = None, timeout: float = 30):
        self.phone_number_id = (
            phone_number_id if phone_number_id is not None else settings.whatsapp_phone_number_id
        )
        self.access_token = access_token if access_token is not None else settings.whatsapp_access_token
        self.timeout = timeout

    async def send(self, document: CommittedDocument, address: str) -> None:
        if not all([self.phone_number_id, self.access_token]):
            raise WhatsAppDeliveryError("Faltan credenciales de WhatsApp")

        phone = normalize_phone(address)
        payload = {
            "messaging_product": "whatsapp",
            "to": phone,
            "type": "text",
            "text": {"body": build_message(document)},
        }
        headers = {"Authorization": f"Bearer {self.access_token}"}

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(
                f"{WHATSAPP_API_BASE}/{self.phone_number_id}/messages", json=payload, headers=headers
            )
        if resp.status_code not in (200, 201):
            logger.error(f"WhatsApp send failed: {resp.text}")
            raise WhatsAppDeliveryError(f"Error enviando mensaje WhatsApp: {resp.status_code}")

        message_id = resp.json().get("messages", [{}])[0].get("id", "")
        logger.info(f"WhatsApp sent to {phone}: message_id={message_id}")


def build_message(document: CommittedDocument) -> str:
    lines = [
        f"Comprobante {document.document_type.value} {document.formatted_number}",
        f"Cliente: {document.client.name}",
        f"Total: ${document.totals.grand_total:.2f}",
    ]
    if document.authorization_code:
        lines.append(f"CAE: {document.authorization_code}")
    if document.valid_until:
        lines.append(f"Válido hasta: {document.valid_until.isoformat()}")
    return "\n".join(lines)


def normalize_phone(phone: str) -> str:
    """Normalize an Argentine phone number to E.164 without '+' (549 + area + number)."""
    phone = phone.strip().replace(" ", "").replace("-", "").replace("(", "").replace(")", "")
    if phone.startswith("+"):
        phone = phone[1:]
    if phone.startswith("549"):
        return phone
    if phone.startswith("54"):
        return "549" + phone[2:]
    if phone.startswith("0"):
        phone = phone[1:]
    if len(phone) == 10:
        return "549" + phone
    return phone
