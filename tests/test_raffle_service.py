import pytest

from talonario.core.errors import ActiveRaffleExists, Forbidden, StoreError, ValidationError
from talonario.services.raffle_service import RaffleService
from talonario.services.reservation import ReservationEngine
from talonario.services.store import MemoryTicketStore
from talonario.services.tickets import Buyer

from conftest import OWNER

BASE = {"title": "Rifa", "price_per_number": 500, "whatsapp_number": "1155"}


def test_create_raffle_generates_numbers(raffles, store):
    raffle = raffles.create_raffle("u2", {**BASE, "total_numbers": 30})
    rows = store.list_tickets(raffle["id"])
    assert sorted(int(r["number"]) for r in rows) == list(range(1, 31))
    assert all(r["status"] == "available" for r in rows)
    assert raffle["status"] == "active"
    assert raffle["user_id"] == "u2"


@pytest.mark.parametrize("size", [0, 20, 100])
def test_create_raffle_rejects_other_sizes(raffles, size):
    with pytest.raises(ValidationError):
        raffles.create_raffle("u2", {**BASE, "total_numbers": size})


def test_create_raffle_validates_fields(raffles):
    with pytest.raises(ValidationError):
        raffles.create_raffle("u2", {**BASE, "title": "  ", "total_numbers": 10})
    with pytest.raises(ValidationError):
        raffles.create_raffle("u2", {**BASE, "price_per_number": 0, "total_numbers": 10})
    with pytest.raises(ValidationError):
        raffles.create_raffle("u2", {**BASE, "whatsapp_number": "", "total_numbers": 10})


def test_one_active_raffle_per_owner(raffles, authority, raffle):
    with pytest.raises(ActiveRaffleExists):
        raffles.create_raffle(OWNER, {**BASE, "total_numbers": 10})
    authority.finish_raffle(raffle["id"], OWNER)
    assert raffles.create_raffle(OWNER, {**BASE, "total_numbers": 10})["status"] == "active"


def test_update_raffle_by_owner(raffles, raffle):
    updated = raffles.update_raffle(raffle["id"], OWNER, {"price_per_number": "1500.456", "user_id": "x"})
    assert updated["price_per_number"] == 1500.46
    assert updated["user_id"] == OWNER
    with pytest.raises(Forbidden):
        raffles.update_raffle(raffle["id"], "intruso", {"title": "Mía"})


def test_progress(engine, authority, raffles, raffle, ids):
    rid = raffle["id"]
    engine.reserve(rid, ids[1], Buyer.clean("Ana"))
    authority.force_status(rid, ids[2], OWNER, "sold", Buyer.clean("Beto"))
    authority.force_status(rid, ids[3], OWNER, "sold", Buyer.clean("Beto"))

    p = raffles.progress(raffles.load_tickets(rid))
    assert p == {
        "total": 10,
        "available": 7,
        "reserved": 1,
        "sold": 2,
        "percent_sold": 20.0,
        "percent_available": 70.0,
    }


def test_progress_of_empty_list():
    p = RaffleService.progress([])
    assert p["total"] == 0
    assert p["percent_sold"] is None


def test_view_hides_contact_and_credential_from_visitors(engine, raffles, paid_raffle, ids):
    rid = paid_raffle["id"]
    engine.reserve(rid, ids[1], Buyer.clean("Ana", "ana.perez@mail.com", "1155"))

    visitor = raffles.view(rid, None)
    assert visitor["is_owner"] is False
    assert "mercadopago_access_token" not in visitor["raffle"]
    assert "has_payment_credential" not in visitor["raffle"]
    assert visitor["raffle"]["payment_enabled"] is True
    row = next(t for t in visitor["tickets"] if t["id"] == ids[1])
    assert row["buyer_phone"] is None
    assert row["buyer_email"] == "an***@ma***.com"

    owner = raffles.view(rid, OWNER)
    assert owner["is_owner"] is True
    assert owner["raffle"]["has_payment_credential"] is True
    assert "mercadopago_access_token" not in owner["raffle"]
    row = next(t for t in owner["tickets"] if t["id"] == ids[1])
    assert row["buyer_phone"] == "1155"


def test_view_releases_expired_reservations(engine, raffles, raffle, ids, clock):
    engine.reserve(raffle["id"], ids[5], Buyer.clean("Ana"))
    clock.advance(hours=24, seconds=1)
    view = raffles.view(raffle["id"])
    assert view["progress"]["reserved"] == 0
    assert next(t for t in view["tickets"] if t["id"] == ids[5])["status"] == "available"


class ConcurrentCreateStore(MemoryTicketStore):
    """Otra sesión del mismo dueño inserta su talonario justo antes que el nuestro."""

    def __init__(self, other_created_at):
        super().__init__()
        self.other_created_at = other_created_at
        self.other_id = None

    def insert_raffle(self, row):
        if self.other_id is None:
            other = super().insert_raffle({**row, "title": "Otra", "created_at": self.other_created_at})
            self.other_id = other["id"]
        return super().insert_raffle(row)


def _service(store):
    return RaffleService(ReservationEngine(store))


def test_concurrent_create_keeps_oldest_raffle():
    store = ConcurrentCreateStore("2000-01-01T00:00:00Z")
    with pytest.raises(ActiveRaffleExists):
        _service(store).create_raffle("u2", {**BASE, "total_numbers": 10})

    active = store.list_raffles(owner_id="u2", status="active")
    assert [r["id"] for r in active] == [store.other_id]


def test_concurrent_create_wins_when_oldest():
    store = ConcurrentCreateStore("2999-01-01T00:00:00Z")
    raffle = _service(store).create_raffle("u2", {**BASE, "total_numbers": 10})
    assert len(store.list_tickets(raffle["id"])) == 10


class BrokenTicketsStore(MemoryTicketStore):
    def __init__(self):
        super().__init__()
        self.broken = True

    def insert_tickets(self, rows):
        if self.broken:
            raise StoreError("No se pudo acceder a los datos (insert_tickets)")
        return super().insert_tickets(rows)


def test_failed_ticket_insert_removes_raffle():
    store = BrokenTicketsStore()
    service = _service(store)
    with pytest.raises(StoreError):
        service.create_raffle("u2", {**BASE, "total_numbers": 10})
    assert store.list_raffles(owner_id="u2") == []

    store.broken = False
    raffle = service.create_raffle("u2", {**BASE, "total_numbers": 10})
    assert len(store.list_tickets(raffle["id"])) == 10
