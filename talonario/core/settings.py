from os import getenv, path
from typing import Tuple

from pydantic import BaseModel
from supabase import create_client, Client
from dotenv import load_dotenv

# =====================================================
# Cargar archivo .env desde la carpeta talonario/
# =====================================================
BASE_DIR = path.dirname(path.abspath(__file__))        # talonario/core
ROOT_DIR = path.dirname(BASE_DIR)                      # talonario/
ENV_PATH = path.join(ROOT_DIR, ".env")                 # talonario/.env
load_dotenv(ENV_PATH)
# =====================================================

# Tamaños de talonario que se pueden crear
ALLOWED_SIZES: Tuple[int, ...] = (10, 30, 50)


class Settings(BaseModel):
    supabase_url: str = getenv("SUPABASE_URL", "")
    supabase_service_key: str = getenv("SUPABASE_SERVICE_KEY", "")
    public_anon_key: str = getenv("PUBLIC_SUPABASE_ANON_KEY", "")

    # 'supabase' | 'memory'
    store_backend: str = getenv("STORE_BACKEND", "supabase").lower()

    public_base_url: str = getenv("PUBLIC_BASE_URL", "http://localhost:8000")
    payment_currency: str = getenv("PAYMENT_CURRENCY", "ARS")
    mercadopago_api_url: str = getenv("MERCADOPAGO_API_URL", "https://api.mercadopago.com")
    http_timeout_seconds: float = float(getenv("HTTP_TIMEOUT_SECONDS", "8"))

    reservation_hours: int = int(getenv("RESERVATION_HOURS", "24"))
    pending_payment_ttl_hours: int = int(getenv("PENDING_PAYMENT_TTL_HOURS", "24"))
    cleanup_interval_seconds: int = int(getenv("CLEANUP_INTERVAL_SECONDS", "60"))

    admin_api_key: str = getenv("ADMIN_API_KEY", "")
    log_level: str = getenv("LOG_LEVEL", "INFO").upper()


settings = Settings()


def make_client() -> Client:
    if not settings.supabase_url or not settings.supabase_service_key:
        raise RuntimeError("Faltan SUPABASE_URL o SUPABASE_SERVICE_KEY")
    return create_client(settings.supabase_url, settings.supabase_service_key)
