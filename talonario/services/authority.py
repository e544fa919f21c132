"""Cambios manuales del organizador sobre números y sobre el talonario."""
from __future__ import annotations

from typing import Callable, Dict, Optional

from loguru import logger

from talonario.core.errors import NotFound, ValidationError
from talonario.services.reservation import RAFFLE_ACTIVE, RAFFLE_COMPLETED, ReservationEngine, require_owner
from talonario.services.store import Row
from talonario.services.tickets import Buyer, Ticket, TicketStatus, available_fields, reserved_fields, sold_fields


class StatusAuthority:
    def __init__(self, reservations: ReservationEngine):
        self.reservations = reservations
        self.store = reservations.store

    def _fields_for(self, status: TicketStatus, ticket: Ticket, buyer: Optional[Buyer]) -> Row:
        now = self.reservations.clock()
        who = buyer if buyer is not None else ticket.buyer
        builders: Dict[TicketStatus, Callable[[], Row]] = {
            TicketStatus.AVAILABLE: available_fields,
            TicketStatus.RESERVED: lambda: reserved_fields(
                who, now, self.reservations.reservation_hours, ticket.payment
            ),
            TicketStatus.SOLD: lambda: sold_fields(now, buyer=who, payment=ticket.payment),
        }
        build = builders.get(status)
        if build is None:
            raise ValidationError(f"Estado inválido: {status}")
        return build()

    def force_status(
        self,
        raffle_id: str,
        ticket_id: str,
        owner_id: Optional[str],
        status: str,
        buyer: Optional[Buyer] = None,
    ) -> Row:
        """Lleva el número a ``status`` sin importar el estado actual.

        Si no se pasa ``buyer`` se conservan los datos del comprador actual
        (salvo al pasar a available, que limpia todo).
        """
        try:
            target = TicketStatus(status)
        except ValueError:
            raise ValidationError(f"Estado inválido: {status}")

        raffle = self.reservations.get_raffle(raffle_id)
        require_owner(raffle, owner_id)

        row = self.store.get_ticket(ticket_id)
        if not row or str(row.get("raffle_id")) != str(raffle_id):
            raise NotFound("No se encontró el número")
        ticket = Ticket.from_row(row)

        updated = self.store.update_ticket(ticket_id, self._fields_for(target, ticket, buyer))
        if updated is None:
            raise NotFound("No se encontró el número")
        logger.info(
            f"Dueño cambió #{ticket.number} de {raffle_id}: {ticket.status.value} -> {target.value}"
        )
        return updated

    def finish_raffle(self, raffle_id: str, owner_id: Optional[str]) -> Row:
        """active → completed. No hay vuelta atrás."""
        raffle = self.reservations.get_raffle(raffle_id)
        require_owner(raffle, owner_id)

        status = raffle.get("status")
        if status == RAFFLE_COMPLETED:
            return raffle
        if status != RAFFLE_ACTIVE:
            raise ValidationError("Solo se puede finalizar un talonario activo")

        updated = self.store.update_raffle(
            raffle_id, {"status": RAFFLE_COMPLETED}, expected={"status": RAFFLE_ACTIVE}
        )
        if updated is None:
            # otra sesión del dueño lo finalizó primero
            return self.reservations.get_raffle(raffle_id)
        logger.info(f"Talonario {raffle_id} finalizado")
        return updated
