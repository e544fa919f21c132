"""Pagos online: pedido de link y conciliación por consulta.

No hay webhook. El pago se concilia cuando el comprador vuelve a la rifa y
existe una marca pendiente: si el proveedor informa un pago aprobado los
números pasan a ``sold``; si informa rechazo quedan reservados hasta su
vencimiento natural; si no hay novedad la marca se conserva para la próxima.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from loguru import logger

from talonario.core.errors import AlreadyTaken, PaymentProviderError, RaffleClosed, ValidationError
from talonario.core.settings import settings
from talonario.services.mercadopago import (
    FAILED,
    SETTLED,
    PaymentLinkRequest,
    PaymentProvider,
    return_url_for,
)
from talonario.services.pending import PendingPayment, PendingPaymentRepository
from talonario.services.reservation import RAFFLE_ACTIVE, ReservationEngine, unique_ids
from talonario.services.store import Row
from talonario.services.tickets import (
    Buyer,
    PaymentInfo,
    Ticket,
    TicketStatus,
    available_fields,
    restored_fields,
    sold_fields,
)
from talonario.services.utils import epoch_millis


class ReconcileOutcome(str, Enum):
    SETTLED = "settled"
    FAILED = "failed"
    PENDING = "pending"
    EXPIRED = "expired"        # marca vieja, descartada sin consultar
    DISCARDED = "discarded"    # la rifa ya no tiene credencial de pago
    NO_MARKER = "no_marker"


@dataclass
class LinkResult:
    payment_link: str
    reference_id: str
    tickets: List[Row]
    pending: PendingPayment


@dataclass
class ReconcileResult:
    outcome: ReconcileOutcome
    sold_ids: List[str] = field(default_factory=list)
    skipped_ids: List[str] = field(default_factory=list)


_RETURN_NOTICES: Dict[str, Dict[str, str]] = {
    "success": {
        "title": "¡Pago exitoso!",
        "description": "Tu pago ha sido procesado correctamente. El número será marcado como vendido.",
    },
    "failure": {
        "title": "Pago rechazado",
        "description": "Tu pago no pudo ser procesado. El número quedará reservado por 24 horas.",
    },
    "pending": {
        "title": "Pago pendiente",
        "description": "Tu pago está siendo procesado. Te notificaremos cuando se complete.",
    },
}


def return_notice(payment: Optional[str]) -> Optional[Dict[str, str]]:
    """Aviso para el comprador según el ?payment= con el que vuelve del proveedor."""
    return _RETURN_NOTICES.get((payment or "").strip().lower())


def external_reference(raffle_id: str, ticket_ids: List[str]) -> str:
    return f"{raffle_id}:{','.join(ticket_ids)}"


class PaymentReconciliationEngine:
    def __init__(
        self,
        reservations: ReservationEngine,
        provider: PaymentProvider,
        pending: PendingPaymentRepository,
        base_url: Optional[str] = None,
        currency: Optional[str] = None,
        ttl_hours: Optional[int] = None,
    ):
        self.reservations = reservations
        self.store = reservations.store
        self.clock = reservations.clock
        self.provider = provider
        self.pending = pending
        self.base_url = base_url if base_url is not None else settings.public_base_url
        self.currency = currency or settings.payment_currency
        self.ttl_hours = ttl_hours or settings.pending_payment_ttl_hours

    # ---------- Link de pago ----------
    @staticmethod
    def _claimable(ticket: Ticket, buyer: Buyer) -> bool:
        if ticket.status is TicketStatus.AVAILABLE:
            return True
        return (
            ticket.status is TicketStatus.RESERVED
            and bool(buyer.email)
            and ticket.buyer.email == buyer.email
        )

    def request_payment_link(self, raffle_id: str, ticket_ids: List[str], buyer: Buyer) -> LinkResult:
        buyer.require_name()
        ids = unique_ids(ticket_ids)
        if not ids:
            raise ValidationError("Elegí al menos un número")

        raffle = self.reservations.require_active_raffle(raffle_id)
        credential = raffle.get("mercadopago_access_token") or ""
        if not raffle.get("mercadopago_enabled") or not credential:
            raise PaymentProviderError("El organizador no tiene habilitado el pago online")
        price = float(raffle.get("price_per_number") or 0)
        if price <= 0:
            raise PaymentProviderError("El precio debe ser mayor a 0")

        tickets = [self.reservations.load_ticket(raffle_id, tid) for tid in ids]
        taken = [t.id for t in tickets if not self._claimable(t, buyer)]
        if taken:
            raise AlreadyTaken(taken)

        numbers = sorted(t.number for t in tickets)
        title = raffle.get("title", "")
        if len(numbers) == 1:
            item_title = f"Número {numbers[0]} - {title}"
        else:
            item_title = f"{len(numbers)} números - {title}"
        req = PaymentLinkRequest(
            credential=credential,
            title=item_title,
            description=f"Rifa: {title} ({', '.join(str(n) for n in numbers)})",
            unit_price=price,
            quantity=len(ids),
            external_reference=external_reference(raffle_id, ids),
            currency=self.currency,
            buyer_email=buyer.email,
            buyer_name=buyer.name,
            return_url=return_url_for(self.base_url, raffle_id),
        )
        link = self.provider.create_payment_link(req)
        payment = PaymentInfo(link=link.url, reference_id=link.reference_id, status="pending")

        # primero los números libres; las reservas propias se pisan solo si no se perdió ninguno
        free = [t for t in tickets if t.status is TicketStatus.AVAILABLE]
        own = [t for t in tickets if t.status is not TicketStatus.AVAILABLE]
        claimed: Dict[str, Row] = {}
        taken_here: List[Ticket] = []
        lost: List[str] = []
        for group in (free, own):
            for ticket in group:
                row = self.reservations.claim(ticket, buyer, payment)
                if row is None:
                    lost.append(ticket.id)
                    continue
                claimed[ticket.id] = row
                taken_here.append(ticket)
            if lost:
                break

        if lost:
            # el link cubre todos los números: si se perdió alguno, todo vuelve a como estaba
            self._rollback(taken_here, link.reference_id)
            logger.info(f"Link {link.reference_id} descartado; números ganados por otro: {lost}")
            raise AlreadyTaken(lost)

        pending = PendingPayment(
            raffle_id=raffle_id,
            ticket_ids=ids,
            reference_id=link.reference_id,
            created_at_ms=epoch_millis(self.clock()),
        )
        self.pending.set(pending)
        logger.info(f"Link de pago {link.reference_id} para {raffle_id} números {numbers}")
        return LinkResult(
            payment_link=link.url,
            reference_id=link.reference_id,
            tickets=[claimed[t.id] for t in tickets],
            pending=pending,
        )

    def _rollback(self, tickets: List[Ticket], reference_id: str) -> None:
        """Deshace los reclamos de este pedido.

        Un número que estaba libre vuelve a available; una reserva propia vuelve
        a su link y vencimiento anteriores, así la marca vieja la sigue encontrando.
        Solo se toca lo que todavía tiene la referencia descartada.
        """
        for ticket in tickets:
            if ticket.status is TicketStatus.AVAILABLE:
                fields = available_fields()
            else:
                fields = restored_fields(ticket)
            self.store.update_ticket(
                ticket.id,
                fields,
                expected={"status": TicketStatus.RESERVED.value, "payment_preference_id": reference_id},
            )

    # ---------- Conciliación ----------
    def reconcile(self, raffle_id: str) -> ReconcileResult:
        pending = self.pending.get()
        if pending is None or pending.raffle_id != raffle_id:
            return ReconcileResult(ReconcileOutcome.NO_MARKER)

        if pending.is_expired(self.clock(), self.ttl_hours):
            self.pending.clear()
            return ReconcileResult(ReconcileOutcome.EXPIRED)

        raffle = self.reservations.get_raffle(raffle_id)
        credential = raffle.get("mercadopago_access_token")
        if not credential:
            self.pending.clear()
            return ReconcileResult(ReconcileOutcome.DISCARDED)
        if raffle.get("status") != RAFFLE_ACTIVE:
            raise RaffleClosed()

        payments = self.provider.search_payments(credential, pending.reference_id)
        outcomes = {p.outcome for p in payments}

        if SETTLED in outcomes:
            result = self._promote(pending)
            self.pending.clear()
            logger.info(
                f"Pago {pending.reference_id} aprobado: vendidos={result.sold_ids} omitidos={result.skipped_ids}"
            )
            return result

        if FAILED in outcomes:
            self.pending.clear()
            logger.info(f"Pago {pending.reference_id} rechazado; los números siguen reservados")
            return ReconcileResult(ReconcileOutcome.FAILED)

        return ReconcileResult(ReconcileOutcome.PENDING)

    def _promote(self, pending: PendingPayment) -> ReconcileResult:
        result = ReconcileResult(ReconcileOutcome.SETTLED)
        now = self.clock()
        for tid in pending.ticket_ids:
            row = self.store.get_ticket(tid)
            ticket = Ticket.from_row(row) if row else None
            if ticket is not None and ticket.status is TicketStatus.SOLD and ticket.payment.reference_id == pending.reference_id:
                result.sold_ids.append(tid)
                continue
            if (
                ticket is None
                or ticket.status is not TicketStatus.RESERVED
                or ticket.payment.reference_id != pending.reference_id
            ):
                # la reserva ya no es de este pago (cancelada, vencida o reasignada)
                logger.warning(f"Pago {pending.reference_id}: número {tid} ya no está reservado para este pago")
                result.skipped_ids.append(tid)
                continue

            payment = PaymentInfo(ticket.payment.link, pending.reference_id, "approved")
            updated = self.store.update_ticket(
                tid,
                sold_fields(now, buyer=ticket.buyer, payment=payment),
                expected={"status": TicketStatus.RESERVED.value, "payment_preference_id": pending.reference_id},
            )
            if updated is None:
                result.skipped_ids.append(tid)
            else:
                result.sold_ids.append(tid)
        return result

    def reconcile_quietly(self, raffle_id: str) -> Optional[ReconcileResult]:
        """Chequeo en segundo plano: los errores se loguean y no se muestran."""
        try:
            return self.reconcile(raffle_id)
        except Exception:
            logger.exception(f"Error al verificar pago pendiente de {raffle_id}")
            return None
