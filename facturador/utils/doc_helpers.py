"""
FACTURADOR — Document Utilities
Helper functions for document numbers, operation ids, money and CUIT handling.
"""

import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from uuid import uuid4

CENT = Decimal("0.01")


def quantize_money(value) -> Decimal:
    """Round to cents with commercial rounding (half up)."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def format_document_number(branch_code: str, number: int) -> str:
    """
    Render a comprobante number.
    Format: BBBB-NNNNNNNN
    - BBBB: punto de venta, zero-padded to 4
    - NNNNNNNN: sequence number, zero-padded to 8
    """
    return f"{str(branch_code).zfill(4)}-{str(number).zfill(8)}"


def generate_operation_id(prefix: str = "factura") -> str:
    """External reference for a wallet QR operation: factura_<epoch ms>_<8 hex>."""
    return f"{prefix}_{int(time.time() * 1000)}_{uuid4().hex[:8]}"


def current_ar_datetime() -> datetime:
    """Current wall-clock time in Argentina (UTC-3, no DST)."""
    return datetime.now(timezone(timedelta(hours=-3)))


def normalize_cuit(value: str) -> str:
    """Strip separators: 20-12345678-3 → 20123456783."""
    return "".join(ch for ch in (value or "") if ch.isdigit())


def validate_cuit(value: str) -> bool:
    """
    CUIT/CUIL check digit validation (modulo 11).
    Expected: 11 digits, separators allowed.
    """
    digits = normalize_cuit(value)
    if len(digits) != 11:
        return False
    weights = [5, 4, 3, 2, 7, 6, 5, 4, 3, 2]
    total = sum(int(d) * w for d, w in zip(digits[:10], weights))
    check = 11 - (total % 11)
    if check == 11:
        check = 0
    elif check == 10:
        check = 9
    return check == int(digits[10])
