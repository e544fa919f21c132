"""Reservas de números por parte de compradores.

La exclusión entre compradores no se resuelve en proceso: cada reserva es un
UPDATE condicional ``status = 'available'`` contra el almacén, así que de dos
intentos simultáneos sobre el mismo número gana uno solo y el otro recibe
``AlreadyTaken``.
"""
from __future__ import annotations

import datetime as dt
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from loguru import logger

from talonario.core.errors import (
    AlreadyTaken,
    Forbidden,
    NotFound,
    PartialBulkFailure,
    RaffleClosed,
    RaffleError,
    ValidationError,
)
from talonario.core.settings import settings
from talonario.services.messaging import interest_message, whatsapp_link
from talonario.services.store import Row, TicketStore
from talonario.services.tickets import (
    Buyer,
    PaymentInfo,
    Ticket,
    TicketStatus,
    available_fields,
    reserved_fields,
)
from talonario.services.utils import now_utc

Clock = Callable[[], dt.datetime]

RAFFLE_ACTIVE = "active"
RAFFLE_COMPLETED = "completed"


@dataclass
class ReserveResult:
    ticket: Row
    whatsapp_link: str


@dataclass
class BulkReserveResult:
    reserved: List[Row] = field(default_factory=list)
    failed_ids: List[str] = field(default_factory=list)
    failed_numbers: List[int] = field(default_factory=list)
    whatsapp_link: Optional[str] = None

    @property
    def reserved_ids(self) -> List[str]:
        return [str(r["id"]) for r in self.reserved]

    @property
    def reserved_numbers(self) -> List[int]:
        return sorted(int(r["number"]) for r in self.reserved)


def require_owner(raffle: Row, user_id: Optional[str]) -> None:
    if not user_id or str(raffle.get("user_id")) != str(user_id):
        raise Forbidden("Solo el organizador puede hacer esto")


def unique_ids(ticket_ids: List[str]) -> List[str]:
    seen = set()
    out = []
    for tid in ticket_ids or []:
        tid = str(tid).strip()
        if tid and tid not in seen:
            seen.add(tid)
            out.append(tid)
    return out


class ReservationEngine:
    def __init__(
        self,
        store: TicketStore,
        clock: Clock = now_utc,
        reservation_hours: Optional[int] = None,
        max_workers: int = 8,
    ):
        self.store = store
        self.clock = clock
        self.reservation_hours = reservation_hours or settings.reservation_hours
        self.max_workers = max_workers

    # ---------- Rifa ----------
    def get_raffle(self, raffle_id: str) -> Row:
        raffle = self.store.get_raffle(raffle_id)
        if not raffle:
            raise NotFound("No se encontró el talonario")
        return raffle

    def require_active_raffle(self, raffle_id: str) -> Row:
        """Compuerta de estado: con la rifa finalizada los compradores no pueden modificar nada."""
        raffle = self.get_raffle(raffle_id)
        if raffle.get("status") != RAFFLE_ACTIVE:
            raise RaffleClosed()
        return raffle

    # ---------- Lectura con vencimiento perezoso ----------
    def load_ticket(self, raffle_id: str, ticket_id: str) -> Ticket:
        row = self.store.get_ticket(ticket_id)
        if not row or str(row.get("raffle_id")) != str(raffle_id):
            raise NotFound("No se encontró el número")
        return self.free_if_expired(Ticket.from_row(row))

    def free_if_expired(self, ticket: Ticket) -> Ticket:
        if not ticket.is_expired(self.clock()):
            return ticket
        # CAS sobre el vencimiento leído: si el dueño cambió el número mientras tanto, no se pisa
        row = self.store.update_ticket(
            ticket.id,
            available_fields(),
            expected={"status": TicketStatus.RESERVED.value, "reserved_until": ticket.raw_reserved_until},
        )
        if row is not None:
            logger.info(f"Reserva vencida liberada: #{ticket.number} ({ticket.id})")
            return Ticket.from_row(row)
        fresh = self.store.get_ticket(ticket.id)
        if not fresh:
            raise NotFound("No se encontró el número")
        return Ticket.from_row(fresh)

    def expire_sweep(self, raffle_id: str) -> List[Row]:
        released = self.store.release_expired(raffle_id, self.clock())
        if released:
            logger.info(
                f"Sweep {raffle_id}: liberados {sorted(int(r['number']) for r in released)}"
            )
        return released

    # ---------- Escritura condicional ----------
    def claim(self, ticket: Ticket, buyer: Buyer, payment: Optional[PaymentInfo] = None) -> Optional[Row]:
        """available → reserved. Devuelve None si otro actor ganó.

        Con ``payment`` también acepta que el mismo comprador (mismo email) vuelva
        a pedir link sobre su propia reserva vigente.
        """
        fields = reserved_fields(buyer, self.clock(), self.reservation_hours, payment)
        if ticket.status is TicketStatus.AVAILABLE:
            return self.store.update_ticket(
                ticket.id, fields, expected={"status": TicketStatus.AVAILABLE.value}
            )
        if (
            payment is not None
            and ticket.status is TicketStatus.RESERVED
            and buyer.email
            and ticket.buyer.email == buyer.email
        ):
            return self.store.update_ticket(
                ticket.id,
                fields,
                expected={"status": TicketStatus.RESERVED.value, "reserved_until": ticket.raw_reserved_until},
            )
        return None

    # ---------- Operaciones ----------
    def reserve(self, raffle_id: str, ticket_id: str, buyer: Buyer) -> ReserveResult:
        buyer.require_name()
        raffle = self.require_active_raffle(raffle_id)

        ticket = self.load_ticket(raffle_id, ticket_id)
        if ticket.status is not TicketStatus.AVAILABLE:
            raise AlreadyTaken([ticket_id])

        row = self.claim(ticket, buyer)
        if row is None:
            logger.info(f"Carrera perdida por #{ticket.number} ({ticket_id})")
            raise AlreadyTaken([ticket_id])

        logger.info(f"Reservado #{ticket.number} de {raffle_id} para {buyer.name}")
        link = whatsapp_link(raffle.get("whatsapp_number", ""), interest_message([ticket.number], raffle.get("title", "")))
        return ReserveResult(ticket=row, whatsapp_link=link)

    def _reserve_one(self, raffle_id: str, ticket_id: str, buyer: Buyer) -> tuple:
        # cualquier error de un número cuenta como falla de ese número; el resto sigue
        try:
            ticket = self.load_ticket(raffle_id, ticket_id)
        except NotFound:
            return ticket_id, None, None
        except RaffleError as e:
            logger.warning(f"Reserva múltiple: no se pudo leer {ticket_id}: {e.message}")
            return ticket_id, None, None
        if ticket.status is not TicketStatus.AVAILABLE:
            return ticket_id, ticket.number, None
        try:
            return ticket_id, ticket.number, self.claim(ticket, buyer)
        except RaffleError as e:
            logger.warning(f"Reserva múltiple: no se pudo reservar #{ticket.number}: {e.message}")
            return ticket_id, ticket.number, None

    def bulk_reserve(self, raffle_id: str, ticket_ids: List[str], buyer: Buyer) -> BulkReserveResult:
        """Reserva cada número por separado; no hay atomicidad entre números.

        Lo que se reservó queda reservado aunque otros fallen. Si falla alguno se
        lanza ``PartialBulkFailure`` con el detalle.
        """
        buyer.require_name()
        ids = unique_ids(ticket_ids)
        if not ids:
            raise ValidationError("Elegí al menos un número")
        raffle = self.require_active_raffle(raffle_id)

        workers = max(1, min(self.max_workers, len(ids)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            outcomes = list(pool.map(lambda tid: self._reserve_one(raffle_id, tid, buyer), ids))

        result = BulkReserveResult()
        for tid, number, row in outcomes:
            if row is not None:
                result.reserved.append(row)
            else:
                result.failed_ids.append(tid)
                if number is not None:
                    result.failed_numbers.append(int(number))
        result.failed_numbers.sort()

        if result.reserved:
            result.whatsapp_link = whatsapp_link(
                raffle.get("whatsapp_number", ""),
                interest_message(result.reserved_numbers, raffle.get("title", "")),
            )
        logger.info(
            f"Reserva múltiple en {raffle_id}: ok={result.reserved_numbers} fallidos={result.failed_numbers}"
        )
        if result.failed_ids:
            raise PartialBulkFailure(result)
        return result

    def cancel(self, raffle_id: str, ticket_id: str, owner_id: Optional[str]) -> Row:
        """reserved → available. Solo el dueño, sin guarda de concurrencia."""
        raffle = self.get_raffle(raffle_id)
        require_owner(raffle, owner_id)
        row = self.store.get_ticket(ticket_id)
        if not row or str(row.get("raffle_id")) != str(raffle_id):
            raise NotFound("No se encontró el número")

        status = row.get("status")
        if status == TicketStatus.AVAILABLE.value:
            return row
        if status != TicketStatus.RESERVED.value:
            raise ValidationError("El número no está reservado")

        updated = self.store.update_ticket(ticket_id, available_fields())
        if updated is None:
            raise NotFound("No se encontró el número")
        logger.info(f"Reserva cancelada por el dueño: #{row.get('number')} de {raffle_id}")
        return updated
