import datetime as dt
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional
from urllib.parse import urlparse


def mask_email(email: str) -> str:
    if not email or "@" not in email:
        return email
    user, dom = email.split("@", 1)

    def _mask(s: str) -> str:
        if len(s) <= 2:
            return s[:1] + "*"
        return s[:2] + "***"

    dom_parts = dom.split(".")
    dom_parts[0] = _mask(dom_parts[0])
    return f"{_mask(user)}@{'.'.join(dom_parts)}"


def round2(x: float | Decimal) -> float:
    if not isinstance(x, Decimal):
        x = Decimal(str(x))
    return float(x.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


# ---------- Tiempo ----------
def now_utc() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def to_iso(value: dt.datetime) -> str:
    # PostgREST espera ISO 8601 con 'Z'
    return value.astimezone(dt.timezone.utc).isoformat().replace("+00:00", "Z")


def parse_iso(s: Optional[str]) -> Optional[dt.datetime]:
    """Normaliza ISO8601 (soporta 'Z' y '+00:00'). Devuelve None si no parsea."""
    if not s:
        return None
    if isinstance(s, dt.datetime):
        return s
    try:
        value = dt.datetime.fromisoformat(str(s).replace("Z", "+00:00"))
    except ValueError:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    return value


def epoch_millis(value: dt.datetime) -> int:
    return int(value.timestamp() * 1000)


# ---------- URLs ----------
def is_local_url(url: str) -> bool:
    """True si el proveedor de pagos no puede volver a esta URL."""
    host = (urlparse(url or "").hostname or "").lower()
    if not host:
        return True
    return host in ("localhost", "127.0.0.1") or "192.168" in host
