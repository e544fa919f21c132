import pytest

from talonario.core.errors import AlreadyTaken, PaymentProviderError, RaffleClosed, ValidationError
from talonario.services.mercadopago import ProviderPayment
from talonario.services.payments import ReconcileOutcome, return_notice
from talonario.services.pending import PendingPayment
from talonario.services.tickets import Buyer, Ticket, TicketStatus, check_invariants
from talonario.services.utils import epoch_millis

from conftest import OWNER


def test_payment_link_reserves_and_persists_marker(payments, provider, pending, store, paid_raffle, ids, clock):
    rid = paid_raffle["id"]
    res = payments.request_payment_link(rid, [ids[7]], Buyer.clean("Ana", "ana@mail.com"))

    assert res.payment_link == "https://pay.test/checkout/pref-1"
    assert res.reference_id == "pref-1"

    row = store.get_ticket(ids[7])
    assert row["status"] == "reserved"
    assert row["payment_link"] == res.payment_link
    assert row["payment_preference_id"] == "pref-1"

    marker = pending.get()
    assert marker.raffle_id == rid
    assert marker.ticket_ids == [ids[7]]
    assert marker.reference_id == "pref-1"
    assert marker.created_at_ms == epoch_millis(clock())

    req = provider.requests[0]
    assert req.unit_price == 1000
    assert req.quantity == 1
    assert req.external_reference == f"{rid}:{ids[7]}"
    assert req.return_url == f"https://rifas.example.com/raffle/{rid}"
    assert req.buyer_email == "ana@mail.com"


def test_payment_link_for_several_numbers(payments, provider, paid_raffle, ids):
    res = payments.request_payment_link(paid_raffle["id"], [ids[2], ids[5]], Buyer.clean("Ana"))
    assert len(res.tickets) == 2
    assert provider.requests[0].quantity == 2
    assert provider.requests[0].title.startswith("2 números")
    assert res.pending.to_marker()["ticketIds"] == [ids[2], ids[5]]


def test_settled_payment_promotes_tickets_and_clears_marker(payments, provider, pending, store, paid_raffle, ids):
    rid = paid_raffle["id"]
    payments.request_payment_link(rid, [ids[7]], Buyer.clean("Ana"))
    provider.payments["pref-1"] = [ProviderPayment("1", "rejected"), ProviderPayment("2", "approved")]

    result = payments.reconcile(rid)

    assert result.outcome is ReconcileOutcome.SETTLED
    assert result.sold_ids == [ids[7]]
    t = Ticket.from_row(store.get_ticket(ids[7]))
    assert t.status is TicketStatus.SOLD
    assert t.sold_at is not None
    assert t.reserved_until is None
    assert t.payment.status == "approved"
    check_invariants(t)
    assert pending.get() is None


def test_pending_payment_keeps_marker(payments, provider, pending, store, paid_raffle, ids):
    rid = paid_raffle["id"]
    payments.request_payment_link(rid, [ids[7]], Buyer.clean("Ana"))
    provider.payments["pref-1"] = [ProviderPayment("1", "in_process")]

    assert payments.reconcile(rid).outcome is ReconcileOutcome.PENDING
    assert store.get_ticket(ids[7])["status"] == "reserved"
    assert pending.get() is not None


def test_failed_payment_leaves_reservation_and_clears_marker(payments, provider, pending, store, paid_raffle, ids):
    rid = paid_raffle["id"]
    payments.request_payment_link(rid, [ids[7]], Buyer.clean("Ana"))
    provider.payments["pref-1"] = [ProviderPayment("1", "cancelled")]

    assert payments.reconcile(rid).outcome is ReconcileOutcome.FAILED
    assert store.get_ticket(ids[7])["status"] == "reserved"
    assert pending.get() is None


def test_old_marker_is_discarded_without_calling_provider(payments, provider, pending, paid_raffle, ids, clock):
    payments.request_payment_link(paid_raffle["id"], [ids[7]], Buyer.clean("Ana"))
    clock.advance(hours=25)

    assert payments.reconcile(paid_raffle["id"]).outcome is ReconcileOutcome.EXPIRED
    assert provider.searches == 0
    assert pending.get() is None


def test_marker_for_other_raffle_is_ignored(payments, provider, pending, paid_raffle):
    pending.set(PendingPayment("other-raffle", ["t1"], "pref-9", 0))
    assert payments.reconcile(paid_raffle["id"]).outcome is ReconcileOutcome.NO_MARKER
    assert pending.get() is not None
    assert provider.searches == 0


def test_settled_payment_skips_ticket_taken_back_by_owner(payments, provider, authority, store, paid_raffle, ids):
    rid = paid_raffle["id"]
    payments.request_payment_link(rid, [ids[1], ids[2]], Buyer.clean("Ana"))
    authority.force_status(rid, ids[2], OWNER, "available")
    provider.payments["pref-1"] = [ProviderPayment("1", "approved")]

    result = payments.reconcile(rid)
    assert result.sold_ids == [ids[1]]
    assert result.skipped_ids == [ids[2]]
    assert store.get_ticket(ids[2])["status"] == "available"


def test_provider_error_leaves_ticket_untouched(payments, provider, pending, store, paid_raffle, ids):
    provider.fail_create = True
    with pytest.raises(PaymentProviderError) as exc:
        payments.request_payment_link(paid_raffle["id"], [ids[7]], Buyer.clean("Ana"))
    assert exc.value.provider_message == "invalid access token"
    assert store.get_ticket(ids[7])["status"] == "available"
    assert pending.get() is None


def test_payment_requires_enabled_raffle(payments, provider, raffle, ids):
    with pytest.raises(PaymentProviderError):
        payments.request_payment_link(raffle["id"], [ids[7]], Buyer.clean("Ana"))
    assert provider.requests == []


def test_payment_requires_buyer_name(payments, provider, paid_raffle, ids):
    with pytest.raises(ValidationError):
        payments.request_payment_link(paid_raffle["id"], [ids[7]], Buyer.clean(""))
    assert provider.requests == []


def test_payment_link_on_taken_ticket(payments, engine, provider, paid_raffle, ids):
    engine.reserve(paid_raffle["id"], ids[7], Buyer.clean("Beto", "beto@mail.com"))
    with pytest.raises(AlreadyTaken):
        payments.request_payment_link(paid_raffle["id"], [ids[7]], Buyer.clean("Ana", "ana@mail.com"))
    assert provider.requests == []


def test_same_buyer_can_pay_own_reservation(payments, engine, store, paid_raffle, ids):
    engine.reserve(paid_raffle["id"], ids[7], Buyer.clean("Ana", "ana@mail.com"))
    res = payments.request_payment_link(paid_raffle["id"], [ids[7]], Buyer.clean("Ana", "ana@mail.com"))
    assert store.get_ticket(ids[7])["payment_preference_id"] == res.reference_id


def test_race_lost_after_link_rolls_back_own_claims(payments, engine, provider, pending, store, paid_raffle, ids):
    rid = paid_raffle["id"]
    real_create = provider.create_payment_link

    def create_and_lose_race(req):
        link = real_create(req)
        # otro comprador gana el número 2 mientras se creaba el link
        engine.reserve(rid, ids[2], Buyer.clean("Beto"))
        return link

    provider.create_payment_link = create_and_lose_race
    with pytest.raises(AlreadyTaken) as exc:
        payments.request_payment_link(rid, [ids[1], ids[2]], Buyer.clean("Ana"))

    assert exc.value.ticket_ids == [ids[2]]
    assert store.get_ticket(ids[1])["status"] == "available"
    assert store.get_ticket(ids[2])["buyer_name"] == "Beto"
    assert pending.get() is None


def test_reconcile_refused_on_completed_raffle(payments, authority, provider, pending, paid_raffle, ids):
    payments.request_payment_link(paid_raffle["id"], [ids[7]], Buyer.clean("Ana"))
    authority.finish_raffle(paid_raffle["id"], OWNER)
    provider.payments["pref-1"] = [ProviderPayment("1", "approved")]

    with pytest.raises(RaffleClosed):
        payments.reconcile(paid_raffle["id"])
    assert payments.reconcile_quietly(paid_raffle["id"]) is None
    assert pending.get() is not None


def test_reconcile_quietly_swallows_provider_errors(payments, provider, paid_raffle, ids):
    payments.request_payment_link(paid_raffle["id"], [ids[7]], Buyer.clean("Ana"))
    provider.fail_search = True
    assert payments.reconcile_quietly(paid_raffle["id"]) is None


def test_return_notice():
    assert return_notice("success")["title"] == "¡Pago exitoso!"
    assert return_notice("FAILURE")["title"] == "Pago rechazado"
    assert return_notice(None) is None


def _lose_race_during_link(provider, action):
    real_create = provider.create_payment_link

    def create_then_act(req):
        link = real_create(req)
        action()
        return link

    provider.create_payment_link = create_then_act


def test_failed_relink_keeps_previous_link_payable(
    payments, engine, provider, pending, store, paid_raffle, ids, clock
):
    rid = paid_raffle["id"]
    ana = Buyer.clean("Ana", "ana@mail.com")
    payments.request_payment_link(rid, [ids[1]], ana)
    before = store.get_ticket(ids[1])
    clock.advance(hours=1)

    _lose_race_during_link(provider, lambda: engine.reserve(rid, ids[2], Buyer.clean("Beto")))
    with pytest.raises(AlreadyTaken):
        payments.request_payment_link(rid, [ids[1], ids[2]], ana)

    after = store.get_ticket(ids[1])
    assert after["payment_preference_id"] == "pref-1"
    assert after["reserved_until"] == before["reserved_until"]
    assert pending.get().reference_id == "pref-1"

    provider.payments["pref-1"] = [ProviderPayment("1", "approved")]
    result = payments.reconcile(rid)
    assert result.sold_ids == [ids[1]]
    assert store.get_ticket(ids[1])["status"] == "sold"


def test_rollback_restores_own_reservation_already_overwritten(
    payments, authority, provider, store, paid_raffle, ids, clock
):
    rid = paid_raffle["id"]
    ana = Buyer.clean("Ana", "ana@mail.com")
    payments.request_payment_link(rid, [ids[1], ids[3]], ana)
    before = store.get_ticket(ids[1])
    clock.advance(hours=1)

    # el dueño libera el 3 mientras se crea el segundo link: el 2 y el 1 ya se tomaron
    _lose_race_during_link(provider, lambda: authority.force_status(rid, ids[3], OWNER, "available"))
    with pytest.raises(AlreadyTaken) as exc:
        payments.request_payment_link(rid, [ids[1], ids[3], ids[2]], ana)
    assert exc.value.ticket_ids == [ids[3]]

    assert store.get_ticket(ids[2])["status"] == "available"
    restored = Ticket.from_row(store.get_ticket(ids[1]))
    assert restored.payment.reference_id == "pref-1"
    assert restored.payment.link == before["payment_link"]
    assert restored.raw_reserved_until == before["reserved_until"]
    check_invariants(restored)

    provider.payments["pref-1"] = [ProviderPayment("1", "approved")]
    result = payments.reconcile(rid)
    assert result.sold_ids == [ids[1]]
    assert result.skipped_ids == [ids[3]]
