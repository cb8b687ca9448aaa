"""
FACTURADOR — Unit Tests
Helpers, config, signals and error types.

Run: pytest tests/ -v
"""

import re
from decimal import Decimal

import pytest

# ─────────────────────────────────────────────────────────────
# DOCUMENT HELPERS
# ─────────────────────────────────────────────────────────────

from facturador.utils.doc_helpers import (
    current_ar_datetime,
    format_document_number,
    generate_operation_id,
    normalize_cuit,
    quantize_money,
    validate_cuit,
)


class TestFormatDocumentNumber:
    def test_pads_branch_and_number(self):
        assert format_document_number("1", 42) == "0001-00000042"

    def test_accepts_numeric_branch(self):
        assert format_document_number(12, 1) == "0012-00000001"

    def test_large_number_not_truncated(self):
        assert format_document_number("0003", 123456789) == "0003-123456789"


class TestGenerateOperationId:
    def test_format(self):
        assert re.fullmatch(r"factura_\d{13}_[0-9a-f]{8}", generate_operation_id())

    def test_custom_prefix(self):
        assert generate_operation_id("pedido").startswith("pedido_")

    def test_unique_within_same_millisecond(self):
        ids = {generate_operation_id() for _ in range(1000)}
        assert len(ids) == 1000


class TestQuantizeMoney:
    def test_half_up(self):
        assert quantize_money(Decimal("2.345")) == Decimal("2.35")
        assert quantize_money(Decimal("2.344")) == Decimal("2.34")

    def test_integer_input(self):
        assert quantize_money(242) == Decimal("242.00")


class TestCuit:
    def test_normalize_strips_separators(self):
        assert normalize_cuit("20-12345678-6") == "20123456786"
        assert normalize_cuit("") == ""

    def test_valid_check_digit(self):
        assert validate_cuit("20-12345678-6") is True

    def test_wrong_check_digit(self):
        assert validate_cuit("20-12345678-5") is False

    def test_wrong_length(self):
        assert validate_cuit("12345678") is False


class TestCurrentArDatetime:
    def test_utc_minus_three(self):
        now = current_ar_datetime()
        assert now.utcoffset().total_seconds() == -3 * 3600


# ─────────────────────────────────────────────────────────────
# CONFIG
# ─────────────────────────────────────────────────────────────

from facturador.core.config import ARCA_URLS, ArcaEnvironment, Settings, get_arca_url


class TestConfig:
    def test_all_environments_have_all_services(self):
        for env in ArcaEnvironment:
            for service in ("autorizar", "ultimo_numero"):
                assert ARCA_URLS[env][service].startswith("https://")

    def test_get_arca_url_explicit_environment(self):
        url = get_arca_url("autorizar", ArcaEnvironment.PRODUCTION)
        assert "wswhomo" not in url

    def test_test_environment_uses_homologation(self):
        assert "wswhomo" in get_arca_url("autorizar", ArcaEnvironment.TEST)

    def test_unknown_service_raises(self):
        with pytest.raises(ValueError):
            get_arca_url("no_existe", ArcaEnvironment.TEST)

    def test_defaults(self):
        s = Settings(_env_file=None)
        assert s.default_tax_rate == Decimal("21")
        assert s.qr_poll_interval_seconds == 3.0
        assert s.store_backend.value == "memory"

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("FACTURADOR_QR_POLL_INTERVAL_SECONDS", "1.5")
        monkeypatch.setenv("FACTURADOR_STORE_BACKEND", "supabase")
        s = Settings(_env_file=None)
        assert s.qr_poll_interval_seconds == 1.5
        assert s.store_backend.value == "supabase"


# ─────────────────────────────────────────────────────────────
# SIGNALS
# ─────────────────────────────────────────────────────────────

from facturador.utils.signals import Signal


class TestSignal:
    def test_emit_calls_subscribers(self):
        signal = Signal("test")
        received = []
        signal.subscribe(received.append)
        signal.emit(1)
        assert received == [1]

    def test_failing_subscriber_does_not_stop_others(self):
        signal = Signal("test")
        received = []

        def boom(_):
            raise RuntimeError("subscriber bug")

        signal.subscribe(boom)
        signal.subscribe(received.append)
        signal.emit("x")
        assert received == ["x"]

    def test_unsubscribe(self):
        signal = Signal("test")
        received = []
        unsubscribe = signal.subscribe(received.append)
        unsubscribe()
        signal.emit("x")
        assert received == []
        assert len(signal) == 0


# ─────────────────────────────────────────────────────────────
# ERRORS
# ─────────────────────────────────────────────────────────────

from facturador.core.errors import (
    CommitError,
    ExternalAuthorityError,
    FacturadorError,
    InsufficientStock,
    ValidationError,
)


class TestErrors:
    def test_defaults(self):
        err = ValidationError("falta cliente")
        assert err.status_code == 422
        assert err.code == "VALIDATION_ERROR"
        assert isinstance(err, FacturadorError)

    def test_overrides(self):
        err = ValidationError("no existe", code="X", status_code=404)
        assert err.status_code == 404
        assert err.code == "X"
        # class default untouched
        assert ValidationError.status_code == 422

    def test_insufficient_stock_carries_quantities(self):
        err = InsufficientStock("P001", available=3, requested=5)
        assert err.available == 3
        assert err.requested == 5
        assert "Disponible: 3" in err.message

    def test_authority_error_flags(self):
        err = ExternalAuthorityError("timeout", connection_error=True)
        assert err.retry_available is True
        assert err.offline_fallback_available is False
        assert err.status_code == 502

    def test_commit_error(self):
        assert CommitError("x").status_code == 500
