"""Modelo de números de un talonario.

Un número está siempre en exactamente uno de tres estados y cada estado define
qué campos pueden tener valor:

* ``available``: sin comprador, sin fechas, sin datos de pago.
* ``reserved``: ``reserved_at`` y ``reserved_until`` presentes, ``sold_at`` vacío.
* ``sold``: ``sold_at`` presente, ``reserved_until`` vacío.

Toda escritura sobre ``raffle_numbers`` se arma con ``available_fields``,
``reserved_fields`` o ``sold_fields``, que devuelven el set completo de columnas.
"""
from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

from talonario.core.errors import StoreError, ValidationError
from talonario.services.utils import mask_email, parse_iso, to_iso


class TicketStatus(str, Enum):
    AVAILABLE = "available"
    RESERVED = "reserved"
    SOLD = "sold"


BUYER_COLUMNS = ("buyer_name", "buyer_email", "buyer_phone")
TIME_COLUMNS = ("reserved_at", "reserved_until", "sold_at")
PAYMENT_COLUMNS = ("payment_link", "payment_preference_id", "payment_status")


@dataclass(frozen=True)
class Buyer:
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    @classmethod
    def clean(cls, name: Optional[str], email: Optional[str] = None, phone: Optional[str] = None) -> "Buyer":
        return cls(
            name=(name or "").strip() or None,
            email=(email or "").strip().lower() or None,
            phone=(phone or "").strip() or None,
        )

    def require_name(self) -> "Buyer":
        if not self.name:
            raise ValidationError("El nombre del comprador es obligatorio")
        return self

    def columns(self) -> Dict[str, Optional[str]]:
        return {"buyer_name": self.name, "buyer_email": self.email, "buyer_phone": self.phone}


@dataclass(frozen=True)
class PaymentInfo:
    link: Optional[str] = None
    reference_id: Optional[str] = None
    status: Optional[str] = None

    def columns(self) -> Dict[str, Optional[str]]:
        return {
            "payment_link": self.link,
            "payment_preference_id": self.reference_id,
            "payment_status": self.status,
        }


@dataclass
class Ticket:
    id: str
    raffle_id: str
    number: int
    status: TicketStatus
    buyer: Buyer = field(default_factory=Buyer)
    payment: PaymentInfo = field(default_factory=PaymentInfo)
    reserved_at: Optional[dt.datetime] = None
    reserved_until: Optional[dt.datetime] = None
    sold_at: Optional[dt.datetime] = None
    # valor crudo de reserved_until tal como está en la fila, para CAS
    raw_reserved_until: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Ticket":
        try:
            status = TicketStatus(row.get("status"))
        except ValueError:
            raise StoreError(f"Estado de número desconocido: {row.get('status')!r}")
        return cls(
            id=str(row["id"]),
            raffle_id=str(row["raffle_id"]),
            number=int(row["number"]),
            status=status,
            buyer=Buyer(row.get("buyer_name"), row.get("buyer_email"), row.get("buyer_phone")),
            payment=PaymentInfo(
                row.get("payment_link"), row.get("payment_preference_id"), row.get("payment_status")
            ),
            reserved_at=parse_iso(row.get("reserved_at")),
            reserved_until=parse_iso(row.get("reserved_until")),
            sold_at=parse_iso(row.get("sold_at")),
            raw_reserved_until=row.get("reserved_until"),
        )

    def is_expired(self, now: dt.datetime) -> bool:
        return (
            self.status is TicketStatus.RESERVED
            and self.reserved_until is not None
            and self.reserved_until <= now
        )


# ---------- Sets completos de columnas ----------
def available_fields() -> Dict[str, Any]:
    out: Dict[str, Any] = {"status": TicketStatus.AVAILABLE.value}
    for col in BUYER_COLUMNS + TIME_COLUMNS + PAYMENT_COLUMNS:
        out[col] = None
    return out


def reserved_fields(
    buyer: Buyer,
    now: dt.datetime,
    hours: int,
    payment: Optional[PaymentInfo] = None,
) -> Dict[str, Any]:
    out: Dict[str, Any] = {"status": TicketStatus.RESERVED.value}
    out.update(buyer.columns())
    out["reserved_at"] = to_iso(now)
    out["reserved_until"] = to_iso(now + dt.timedelta(hours=hours))
    out["sold_at"] = None
    out.update((payment or PaymentInfo()).columns())
    return out


def sold_fields(
    now: dt.datetime,
    buyer: Optional[Buyer] = None,
    payment: Optional[PaymentInfo] = None,
) -> Dict[str, Any]:
    out: Dict[str, Any] = {"status": TicketStatus.SOLD.value}
    out.update((buyer or Buyer()).columns())
    out["reserved_at"] = None
    out["reserved_until"] = None
    out["sold_at"] = to_iso(now)
    out.update((payment or PaymentInfo()).columns())
    return out


def restored_fields(ticket: Ticket) -> Dict[str, Any]:
    """Set completo que deja una reserva exactamente como se leyó."""
    out: Dict[str, Any] = {"status": TicketStatus.RESERVED.value}
    out.update(ticket.buyer.columns())
    out["reserved_at"] = to_iso(ticket.reserved_at) if ticket.reserved_at else None
    out["reserved_until"] = ticket.raw_reserved_until
    out["sold_at"] = None
    out.update(ticket.payment.columns())
    return out


# ---------- Invariantes ----------
def _check_available(t: Ticket) -> None:
    if t.buyer != Buyer() or t.payment != PaymentInfo():
        raise ValueError(f"#{t.number} disponible con datos de comprador o pago")
    if t.reserved_at or t.reserved_until or t.sold_at:
        raise ValueError(f"#{t.number} disponible con fechas")


def _check_reserved(t: Ticket) -> None:
    if t.reserved_at is None or t.reserved_until is None:
        raise ValueError(f"#{t.number} reservado sin fecha de reserva o vencimiento")
    if t.sold_at is not None:
        raise ValueError(f"#{t.number} reservado con fecha de venta")


def _check_sold(t: Ticket) -> None:
    if t.sold_at is None:
        raise ValueError(f"#{t.number} vendido sin fecha de venta")
    if t.reserved_until is not None:
        raise ValueError(f"#{t.number} vendido con vencimiento de reserva")


_CHECKS: Dict[TicketStatus, Callable[[Ticket], None]] = {
    TicketStatus.AVAILABLE: _check_available,
    TicketStatus.RESERVED: _check_reserved,
    TicketStatus.SOLD: _check_sold,
}


def check_invariants(ticket: Ticket) -> None:
    """Lanza ValueError si los campos no corresponden al estado."""
    check = _CHECKS.get(ticket.status)
    if check is None:
        raise ValueError(f"Estado sin validar: {ticket.status!r}")
    check(ticket)


def public_row(row: Dict[str, Any], reveal_contact: bool) -> Dict[str, Any]:
    """Fila para mostrar: si no es el dueño, sin link de pago ni contacto."""
    out = dict(row)
    if not reveal_contact:
        out["payment_link"] = None
        out["buyer_email"] = mask_email(row.get("buyer_email") or "") or None
        out["buyer_phone"] = None
    return out
