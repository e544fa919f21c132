import datetime as dt
from typing import Dict, List

import pytest

from talonario.core.errors import PaymentProviderError
from talonario.services.authority import StatusAuthority
from talonario.services.mercadopago import PaymentLink, PaymentLinkRequest, PaymentProvider, ProviderPayment
from talonario.services.payments import PaymentReconciliationEngine
from talonario.services.pending import MemoryPendingPaymentRepository
from talonario.services.raffle_service import RaffleService
from talonario.services.reservation import ReservationEngine
from talonario.services.store import MemoryTicketStore

OWNER = "owner-1"


class FakeClock:
    def __init__(self, start: dt.datetime):
        self.now = start

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + dt.timedelta(**kwargs)


class FakeProvider(PaymentProvider):
    def __init__(self):
        self.requests: List[PaymentLinkRequest] = []
        self.payments: Dict[str, List[ProviderPayment]] = {}
        self.fail_create = False
        self.fail_search = False
        self.searches = 0

    def create_payment_link(self, req: PaymentLinkRequest) -> PaymentLink:
        if self.fail_create:
            raise PaymentProviderError("No se pudo crear el link de pago", "invalid access token")
        self.requests.append(req)
        ref = f"pref-{len(self.requests)}"
        return PaymentLink(url=f"https://pay.test/checkout/{ref}", reference_id=ref)

    def search_payments(self, credential: str, reference_id: str) -> List[ProviderPayment]:
        self.searches += 1
        if self.fail_search:
            raise PaymentProviderError("No se pudo consultar el pago", "boom")
        return list(self.payments.get(reference_id, []))


@pytest.fixture
def clock():
    return FakeClock(dt.datetime(2026, 3, 1, 12, 0, tzinfo=dt.timezone.utc))


@pytest.fixture
def store():
    return MemoryTicketStore()


@pytest.fixture
def engine(store, clock):
    return ReservationEngine(store, clock=clock, reservation_hours=24, max_workers=4)


@pytest.fixture
def raffles(engine):
    return RaffleService(engine)


@pytest.fixture
def authority(engine):
    return StatusAuthority(engine)


@pytest.fixture
def raffle(raffles):
    return raffles.create_raffle(
        OWNER,
        {
            "title": "Rifa del club",
            "description": "Canasta navideña",
            "price_per_number": 1000,
            "total_numbers": 10,
            "whatsapp_number": "+54 9 11 5555-0000",
        },
    )


@pytest.fixture
def paid_raffle(store, raffle):
    return store.update_raffle(
        raffle["id"], {"mercadopago_enabled": True, "mercadopago_access_token": "APP_USR-test"}
    )


@pytest.fixture
def ids(store, raffle):
    """número -> id de fila"""
    return {int(r["number"]): r["id"] for r in store.list_tickets(raffle["id"])}


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def pending():
    return MemoryPendingPaymentRepository()


@pytest.fixture
def payments(engine, provider, pending):
    return PaymentReconciliationEngine(
        engine, provider, pending, base_url="https://rifas.example.com", currency="ARS", ttl_hours=24
    )
