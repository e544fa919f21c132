"""Acceso a ``raffles`` y ``raffle_numbers``.

El almacén es el único árbitro de la carrera available → reserved: cada
escritura de estado es un UPDATE condicional (``WHERE id = X AND status = Y``)
y una actualización que no toca filas significa que otro actor ganó.
"""
from __future__ import annotations

import copy
import datetime as dt
import threading
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx
from loguru import logger
from postgrest.exceptions import APIError
from supabase import Client

from talonario.core.errors import ActiveRaffleExists, StoreError
from talonario.core.settings import settings
from talonario.services.tickets import TicketStatus, available_fields
from talonario.services.utils import now_utc, parse_iso, to_iso

RAFFLES = "raffles"
NUMBERS = "raffle_numbers"

# código Postgres de violación de índice único
UNIQUE_VIOLATION = "23505"

Row = Dict[str, Any]
Expected = Optional[Dict[str, Any]]


class TicketStore(ABC):
    # ---------- Rifas ----------
    @abstractmethod
    def get_raffle(self, raffle_id: str) -> Optional[Row]: ...

    @abstractmethod
    def list_raffles(self, owner_id: Optional[str] = None, status: Optional[str] = None) -> List[Row]: ...

    @abstractmethod
    def insert_raffle(self, row: Row) -> Row: ...

    # Igual que update_ticket: None si no coincidió ninguna fila
    @abstractmethod
    def update_raffle(self, raffle_id: str, fields: Row, expected: Expected = None) -> Optional[Row]: ...

    # Borra el talonario y sus números (deshacer un alta a medias)
    @abstractmethod
    def delete_raffle(self, raffle_id: str) -> None: ...

    # ---------- Números ----------
    @abstractmethod
    def insert_tickets(self, rows: List[Row]) -> List[Row]: ...

    @abstractmethod
    def get_ticket(self, ticket_id: str) -> Optional[Row]: ...

    @abstractmethod
    def list_tickets(self, raffle_id: str) -> List[Row]: ...

    @abstractmethod
    def update_ticket(self, ticket_id: str, fields: Row, expected: Expected = None) -> Optional[Row]:
        """UPDATE condicional. ``expected`` son igualdades extra (None = IS NULL).

        Devuelve la fila actualizada o None si no afectó filas (carrera perdida).
        """

    @abstractmethod
    def release_expired(self, raffle_id: str, now: dt.datetime) -> List[Row]:
        """Pasa a available los reservados con reserved_until <= now (mismo criterio que Ticket.is_expired)."""


# =====================================================
# Supabase / PostgREST
# =====================================================
class SupabaseTicketStore(TicketStore):
    def __init__(self, client: Client):
        self.client = client

    def _run(self, query, what: str, on_unique: Optional[Exception] = None) -> List[Row]:
        try:
            res = query.execute()
        except APIError as e:
            if on_unique is not None and e.code == UNIQUE_VIOLATION:
                raise on_unique
            logger.warning(f"Store error ({what}): {e}")
            raise StoreError(f"No se pudo acceder a los datos ({what})")
        except httpx.HTTPError as e:
            logger.warning(f"Store error ({what}): {e}")
            raise StoreError(f"No se pudo acceder a los datos ({what})")
        return res.data or []

    @staticmethod
    def _filter(query, expected: Expected):
        for col, value in (expected or {}).items():
            if value is None:
                query = query.is_(col, "null")
            else:
                query = query.eq(col, value)
        return query

    def get_raffle(self, raffle_id: str) -> Optional[Row]:
        rows = self._run(
            self.client.table(RAFFLES).select("*").eq("id", raffle_id).limit(1),
            "get_raffle",
        )
        return rows[0] if rows else None

    def list_raffles(self, owner_id: Optional[str] = None, status: Optional[str] = None) -> List[Row]:
        q = self.client.table(RAFFLES).select("*")
        if owner_id:
            q = q.eq("user_id", owner_id)
        if status:
            q = q.eq("status", status)
        return self._run(q.order("created_at", desc=True), "list_raffles")

    def insert_raffle(self, row: Row) -> Row:
        # índice único parcial en raffles(user_id) where status = 'active'
        rows = self._run(self.client.table(RAFFLES).insert(row), "insert_raffle", on_unique=ActiveRaffleExists())
        if not rows:
            raise StoreError("No se pudo crear el talonario")
        return rows[0]

    def update_raffle(self, raffle_id: str, fields: Row, expected: Expected = None) -> Optional[Row]:
        q = self.client.table(RAFFLES).update(fields).eq("id", raffle_id)
        rows = self._run(self._filter(q, expected), "update_raffle")
        return rows[0] if rows else None

    def delete_raffle(self, raffle_id: str) -> None:
        self._run(self.client.table(NUMBERS).delete().eq("raffle_id", raffle_id), "delete_raffle")
        self._run(self.client.table(RAFFLES).delete().eq("id", raffle_id), "delete_raffle")

    def insert_tickets(self, rows: List[Row]) -> List[Row]:
        return self._run(self.client.table(NUMBERS).insert(rows), "insert_tickets")

    def get_ticket(self, ticket_id: str) -> Optional[Row]:
        rows = self._run(
            self.client.table(NUMBERS).select("*").eq("id", ticket_id).limit(1),
            "get_ticket",
        )
        return rows[0] if rows else None

    def list_tickets(self, raffle_id: str) -> List[Row]:
        return self._run(
            self.client.table(NUMBERS).select("*").eq("raffle_id", raffle_id).order("number"),
            "list_tickets",
        )

    def update_ticket(self, ticket_id: str, fields: Row, expected: Expected = None) -> Optional[Row]:
        q = self.client.table(NUMBERS).update(fields).eq("id", ticket_id)
        rows = self._run(self._filter(q, expected), "update_ticket")
        return rows[0] if rows else None

    def release_expired(self, raffle_id: str, now: dt.datetime) -> List[Row]:
        return self._run(
            self.client.table(NUMBERS)
            .update(available_fields())
            .eq("raffle_id", raffle_id)
            .eq("status", TicketStatus.RESERVED.value)
            .lte("reserved_until", to_iso(now)),
            "release_expired",
        )


# =====================================================
# En memoria (desarrollo y tests). Datos se pierden al reiniciar.
# =====================================================
class MemoryTicketStore(TicketStore):
    def __init__(self):
        self._lock = threading.Lock()
        self._raffles: Dict[str, Row] = {}
        self._numbers: Dict[str, Row] = {}

    @staticmethod
    def _matches(row: Row, expected: Expected) -> bool:
        return all(row.get(col) == value for col, value in (expected or {}).items())

    def get_raffle(self, raffle_id: str) -> Optional[Row]:
        with self._lock:
            row = self._raffles.get(raffle_id)
            return copy.deepcopy(row) if row else None

    def list_raffles(self, owner_id: Optional[str] = None, status: Optional[str] = None) -> List[Row]:
        with self._lock:
            rows = [
                copy.deepcopy(r)
                for r in self._raffles.values()
                if (not owner_id or r.get("user_id") == owner_id)
                and (not status or r.get("status") == status)
            ]
        return sorted(rows, key=lambda r: r.get("created_at") or "", reverse=True)

    def insert_raffle(self, row: Row) -> Row:
        new = dict(row)
        new.setdefault("id", str(uuid.uuid4()))
        new.setdefault("created_at", to_iso(now_utc()))
        with self._lock:
            self._raffles[new["id"]] = new
            return copy.deepcopy(new)

    def update_raffle(self, raffle_id: str, fields: Row, expected: Expected = None) -> Optional[Row]:
        with self._lock:
            row = self._raffles.get(raffle_id)
            if row is None or not self._matches(row, expected):
                return None
            row.update(fields)
            return copy.deepcopy(row)

    def delete_raffle(self, raffle_id: str) -> None:
        with self._lock:
            self._raffles.pop(raffle_id, None)
            for tid in [t for t, r in self._numbers.items() if r.get("raffle_id") == raffle_id]:
                del self._numbers[tid]

    def insert_tickets(self, rows: List[Row]) -> List[Row]:
        out = []
        with self._lock:
            for row in rows:
                new = dict(available_fields())
                new.update(row)
                new.setdefault("id", str(uuid.uuid4()))
                self._numbers[new["id"]] = new
                out.append(copy.deepcopy(new))
        return out

    def get_ticket(self, ticket_id: str) -> Optional[Row]:
        with self._lock:
            row = self._numbers.get(ticket_id)
            return copy.deepcopy(row) if row else None

    def list_tickets(self, raffle_id: str) -> List[Row]:
        with self._lock:
            rows = [copy.deepcopy(r) for r in self._numbers.values() if r.get("raffle_id") == raffle_id]
        return sorted(rows, key=lambda r: int(r["number"]))

    def update_ticket(self, ticket_id: str, fields: Row, expected: Expected = None) -> Optional[Row]:
        with self._lock:
            row = self._numbers.get(ticket_id)
            if row is None or not self._matches(row, expected):
                return None
            row.update(fields)
            return copy.deepcopy(row)

    def release_expired(self, raffle_id: str, now: dt.datetime) -> List[Row]:
        released = []
        with self._lock:
            for row in self._numbers.values():
                if row.get("raffle_id") != raffle_id or row.get("status") != TicketStatus.RESERVED.value:
                    continue
                until = parse_iso(row.get("reserved_until"))
                if until is not None and until <= now:
                    row.update(available_fields())
                    released.append(copy.deepcopy(row))
        return released


def make_store(client: Optional[Client] = None) -> TicketStore:
    if settings.store_backend == "memory":
        return MemoryTicketStore()
    if client is None:
        raise RuntimeError("SupabaseTicketStore requiere un cliente de Supabase")
    return SupabaseTicketStore(client)
