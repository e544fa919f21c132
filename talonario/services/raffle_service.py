from __future__ import annotations

from typing import Any, Dict, List, Optional

from loguru import logger

from talonario.core.errors import ActiveRaffleExists, RaffleError, ValidationError
from talonario.core.settings import ALLOWED_SIZES
from talonario.services.reservation import RAFFLE_ACTIVE, ReservationEngine, require_owner
from talonario.services.store import Row
from talonario.services.tickets import Ticket, TicketStatus, available_fields, public_row
from talonario.services.utils import round2

# columnas que el dueño puede editar
EDITABLE = (
    "title",
    "description",
    "price_per_number",
    "whatsapp_number",
    "mercadopago_access_token",
    "mercadopago_enabled",
)
PRIVATE = ("mercadopago_access_token",)


class RaffleService:
    def __init__(self, reservations: ReservationEngine):
        self.reservations = reservations
        self.store = reservations.store

    # ---------- Validación ----------
    def _clean(self, data: Dict[str, Any], partial: bool = False) -> Dict[str, Any]:
        out = {k: data[k] for k in EDITABLE if k in data}

        if "title" in out or not partial:
            out["title"] = (out.get("title") or "").strip()
            if not out["title"]:
                raise ValidationError("El título es obligatorio")
        if "description" in out:
            out["description"] = (out.get("description") or "").strip()
        if "price_per_number" in out or not partial:
            try:
                price = float(out.get("price_per_number"))
            except (TypeError, ValueError):
                raise ValidationError("Precio inválido")
            if price <= 0:
                raise ValidationError("El precio debe ser mayor a 0")
            out["price_per_number"] = round2(price)
        if "whatsapp_number" in out or not partial:
            out["whatsapp_number"] = (out.get("whatsapp_number") or "").strip()
            if not out["whatsapp_number"]:
                raise ValidationError("El WhatsApp de contacto es obligatorio")
        if "mercadopago_access_token" in out:
            out["mercadopago_access_token"] = (out.get("mercadopago_access_token") or "").strip() or None
        if "mercadopago_enabled" in out:
            out["mercadopago_enabled"] = bool(out["mercadopago_enabled"])
        return out

    # ---------- Rifas ----------
    def create_raffle(self, owner_id: Optional[str], data: Dict[str, Any]) -> Row:
        """Crea el talonario y todos sus números en estado available."""
        if not owner_id:
            raise ValidationError("Se requiere un usuario")
        fields = self._clean(data)
        try:
            total = int(data.get("total_numbers") or 0)
        except (TypeError, ValueError):
            total = 0
        if total not in ALLOWED_SIZES:
            raise ValidationError(f"Cantidad de números inválida (elegí {', '.join(map(str, ALLOWED_SIZES))})")

        if self.store.list_raffles(owner_id=owner_id, status=RAFFLE_ACTIVE):
            raise ActiveRaffleExists()

        fields.setdefault("description", "")
        raffle = self.store.insert_raffle(
            {**fields, "user_id": owner_id, "total_numbers": total, "status": RAFFLE_ACTIVE}
        )
        # dos altas simultáneas del mismo dueño: queda la más antigua
        active = self.store.list_raffles(owner_id=owner_id, status=RAFFLE_ACTIVE)
        keeper = min(active, key=lambda r: (r.get("created_at") or "", str(r["id"])), default=raffle)
        if str(keeper["id"]) != str(raffle["id"]):
            self.store.delete_raffle(raffle["id"])
            logger.info(f"Alta duplicada de {owner_id} descartada; queda {keeper['id']}")
            raise ActiveRaffleExists()

        rows = [
            {**available_fields(), "raffle_id": raffle["id"], "number": n}
            for n in range(1, total + 1)
        ]
        try:
            self.store.insert_tickets(rows)
        except RaffleError:
            # sin números el talonario no sirve y bloquearía la próxima alta
            logger.warning(f"No se pudieron crear los números de {raffle['id']}; se borra el talonario")
            self.store.delete_raffle(raffle["id"])
            raise
        logger.info(f"Talonario {raffle['id']} creado por {owner_id} con {total} números")
        return raffle

    def update_raffle(self, raffle_id: str, owner_id: Optional[str], changes: Dict[str, Any]) -> Row:
        raffle = self.reservations.require_active_raffle(raffle_id)
        require_owner(raffle, owner_id)
        fields = self._clean(changes, partial=True)
        if not fields:
            return raffle
        updated = self.store.update_raffle(raffle_id, fields)
        return updated or raffle

    def list_for_owner(self, owner_id: str) -> List[Row]:
        return [self.public_raffle(r, reveal=True) for r in self.store.list_raffles(owner_id=owner_id)]

    @staticmethod
    def public_raffle(raffle: Row, reveal: bool = False) -> Row:
        out = {k: v for k, v in raffle.items() if k not in PRIVATE}
        out["payment_enabled"] = bool(raffle.get("mercadopago_enabled") and raffle.get("mercadopago_access_token"))
        if reveal:
            out["has_payment_credential"] = bool(raffle.get("mercadopago_access_token"))
        return out

    # ---------- Números ----------
    def load_tickets(self, raffle_id: str) -> List[Row]:
        """Números del talonario; las reservas vencidas vuelven a available al leerlas."""
        now = self.reservations.clock()
        out = []
        for row in self.store.list_tickets(raffle_id):
            ticket = Ticket.from_row(row)
            if ticket.is_expired(now):
                fresh = self.reservations.free_if_expired(ticket)
                row = self.store.get_ticket(fresh.id) or row
            out.append(row)
        return out

    @staticmethod
    def progress(tickets: List[Row]) -> Dict[str, Any]:
        total = len(tickets)
        counts = {s.value: 0 for s in TicketStatus}
        for t in tickets:
            counts[t.get("status")] = counts.get(t.get("status"), 0) + 1

        percent_sold = None
        percent_available = None
        if total:
            percent_sold = round2((counts["sold"] / total) * 100.0)
            percent_available = round2((counts["available"] / total) * 100.0)
        return {
            "total": total,
            "available": counts["available"],
            "reserved": counts["reserved"],
            "sold": counts["sold"],
            "percent_sold": percent_sold,
            "percent_available": percent_available,
        }

    def view(self, raffle_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        raffle = self.reservations.get_raffle(raffle_id)
        is_owner = bool(user_id) and str(raffle.get("user_id")) == str(user_id)
        tickets = self.load_tickets(raffle_id)
        return {
            "raffle": self.public_raffle(raffle, reveal=is_owner),
            "is_owner": is_owner,
            "tickets": [public_row(t, reveal_contact=is_owner) for t in tickets],
            "progress": self.progress(tickets),
        }
