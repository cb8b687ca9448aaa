"""
FACTURADOR Core Configuration
ARCA API URLs, payment gateway endpoints and application settings.
"""

from decimal import Decimal
from enum import Enum

from pydantic_settings import BaseSettings, SettingsConfigDict


class ArcaEnvironment(str, Enum):
    TEST = "test"
    PRODUCTION = "production"


class StoreBackend(str, Enum):
    MEMORY = "memory"
    SUPABASE = "supabase"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="FACTURADOR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "FACTURADOR"
    app_version: str = "1.0.0"
    debug: bool = True
    host: str = "0.0.0.0"
    port: int = 8000

    # Fiscal authority (ARCA / AFIP gateway)
    arca_environment: ArcaEnvironment = ArcaEnvironment.TEST
    arca_api_key: str = ""
    fiscal_timeout_seconds: float = 30.0
    fiscal_max_attempts: int = 2

    # Digital wallet QR gateway
    payment_gateway_url: str = "https://api.mercadopago.com"
    payment_gateway_token: str = ""
    payment_gateway_timeout_seconds: float = 10.0
    qr_poll_interval_seconds: float = 3.0
    qr_poll_max_seconds: float = 600.0

    # Bank transfer verification
    bank_api_url: str = "http://localhost:8081/bancos"
    bank_timeout_seconds: float = 15.0

    # Composition defaults
    default_tax_rate: Decimal = Decimal("21")

    # Persistence
    store_backend: StoreBackend = StoreBackend.MEMORY
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    # Refuse to settle (except quotes) unless the branch register is open today
    require_open_register: bool = True

    # Notification channels
    email_script_url: str = ""
    whatsapp_phone_number_id: str = ""
    whatsapp_access_token: str = ""

    # Checkout sessions
    session_max_inactive_hours: int = 12
    session_cleanup_interval_seconds: int = 900


settings = Settings()


# ─────────────────────────────────────────────────────────────
# ARCA API URL REGISTRY
# Electronic invoicing gateway (WSFEv1 proxied as JSON).
# ─────────────────────────────────────────────────────────────

ARCA_URLS = {
    ArcaEnvironment.TEST: {
        "autorizar":       "https://wswhomo.arca.gob.ar/wsfev1/comprobantes",
        "ultimo_numero":   "https://wswhomo.arca.gob.ar/wsfev1/comprobantes/ultimo",
    },
    ArcaEnvironment.PRODUCTION: {
        "autorizar":       "https://servicios1.arca.gob.ar/wsfev1/comprobantes",
        "ultimo_numero":   "https://servicios1.arca.gob.ar/wsfev1/comprobantes/ultimo",
    },
}


def get_arca_url(service: str, environment: ArcaEnvironment = None) -> str:
    """Get the ARCA URL for a service based on current environment."""
    env = environment or settings.arca_environment
    urls = ARCA_URLS.get(env)
    if not urls:
        raise ValueError(f"Unknown ARCA environment: {env}")
    url = urls.get(service)
    if not url:
        raise ValueError(f"Unknown ARCA service: {service}")
    return url
