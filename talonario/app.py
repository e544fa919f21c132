from dataclasses import dataclass
from typing import Optional, Any, Callable, Dict
import threading
import os

from fastapi import FastAPI, Depends, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from talonario.api.schemas import (
    CreateRaffleRequest, UpdateRaffleRequest,
    ReserveRequest, ReserveResponse, BulkReserveRequest, BulkReserveResponse,
    ForceStatusRequest, PaymentLinkRequestBody, PaymentLinkResponse, ReconcileResponse,
)
from talonario.core import auth
from talonario.core.auth import current_user_id, optional_user_id, require_admin
from talonario.core.errors import RaffleError, ValidationError
from talonario.core.logging import setup_logging
from talonario.core.settings import settings, make_client
from talonario.services.authority import StatusAuthority
from talonario.services.mercadopago import MercadoPagoClient, PaymentProvider
from talonario.services.payments import PaymentReconciliationEngine, return_notice
from talonario.services.pending import DevicePendingPayments
from talonario.services.raffle_service import RaffleService
from talonario.services.reservation import RAFFLE_ACTIVE, ReservationEngine
from talonario.services.store import TicketStore, make_store


@dataclass
class Services:
    store: TicketStore
    provider: PaymentProvider
    reservations: ReservationEngine
    authority: StatusAuthority
    raffles: RaffleService
    devices: DevicePendingPayments

    def payments_for(self, device_id: str) -> PaymentReconciliationEngine:
        return PaymentReconciliationEngine(
            self.reservations, self.provider, self.devices.for_device(device_id)
        )


def build_services(store: TicketStore, provider: PaymentProvider, reservations: Optional[ReservationEngine] = None) -> Services:
    reservations = reservations or ReservationEngine(store)
    return Services(
        store=store,
        provider=provider,
        reservations=reservations,
        authority=StatusAuthority(reservations),
        raffles=RaffleService(reservations),
        devices=DevicePendingPayments(),
    )


def svc(request: Request) -> Services:
    return request.app.state.services


def device_id(x_device_id: str = Header(default="")) -> str:
    if not x_device_id.strip():
        raise ValidationError("Falta X-Device-Id")
    return x_device_id.strip()


# ---------------- Limpieza de reservas vencidas ----------------
def sweep_active_raffles(services: Services) -> int:
    released = 0
    for r in services.store.list_raffles(status=RAFFLE_ACTIVE):
        try:
            released += len(services.reservations.expire_sweep(r["id"]))
        except Exception:
            logger.exception(f"Sweep falló para {r.get('id')}")
    return released


class CleanupThread:
    def __init__(self, services: Services, interval_seconds: int):
        self.services = services
        self.interval = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _loop(self):
        while not self._stop.wait(self.interval):
            try:
                sweep_active_raffles(self.services)
            except Exception:
                # mantener el loop vivo
                logger.exception("Sweep en segundo plano falló")

    def start(self):
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True)
        self._thread.start()

    def stop(self):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=2)


# ---------------- App ----------------
def create_app(
    store: Optional[TicketStore] = None,
    provider: Optional[PaymentProvider] = None,
    cleanup_interval: Optional[int] = None,
    services: Optional[Services] = None,
    resolver: Optional[Callable[[str], Optional[str]]] = None,
) -> FastAPI:
    setup_logging()

    client = None
    if services is None:
        if store is None:
            client = make_client() if settings.store_backend != "memory" else None
            store = make_store(client)
        services = build_services(store, provider or MercadoPagoClient())
    if resolver is None:
        resolver = auth.supabase_resolver(client) if client else auth.memory_resolver
    auth.set_resolver(resolver)

    app = FastAPI(title="Talonario API", version="1.0.0")
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RaffleError)
    async def raffle_error_handler(request: Request, exc: RaffleError):
        body: Dict[str, Any] = {"detail": exc.message, "error": type(exc).__name__}
        body.update(exc.extra())
        return JSONResponse(status_code=exc.status_code, content=body)

    interval = settings.cleanup_interval_seconds if cleanup_interval is None else cleanup_interval
    if interval > 0:
        cleaner = CleanupThread(services, interval)
        app.add_event_handler("startup", cleaner.start)
        app.add_event_handler("shutdown", cleaner.stop)

    register_routes(app)
    return app


def register_routes(app: FastAPI) -> None:
    # ---------------- Salud ----------------
    @app.get("/health")
    def health():
        return {"status": "ok", "store": type(app.state.services.store).__name__}

    # ---------------- Rifas ----------------
    @app.post("/raffles", status_code=201)
    def create_raffle(req: CreateRaffleRequest, user_id: str = Depends(current_user_id), s: Services = Depends(svc)):
        raffle = s.raffles.create_raffle(user_id, req.model_dump())
        return s.raffles.public_raffle(raffle, reveal=True)

    @app.get("/me/raffles")
    def my_raffles(user_id: str = Depends(current_user_id), s: Services = Depends(svc)):
        return {"raffles": s.raffles.list_for_owner(user_id)}

    @app.get("/raffles/{raffle_id}")
    def view_raffle(raffle_id: str, user_id: Optional[str] = Depends(optional_user_id), s: Services = Depends(svc)):
        return s.raffles.view(raffle_id, user_id)

    @app.patch("/raffles/{raffle_id}")
    def update_raffle(
        raffle_id: str,
        req: UpdateRaffleRequest,
        user_id: str = Depends(current_user_id),
        s: Services = Depends(svc),
    ):
        raffle = s.raffles.update_raffle(raffle_id, user_id, req.model_dump(exclude_unset=True))
        return s.raffles.public_raffle(raffle, reveal=True)

    @app.post("/raffles/{raffle_id}/finish")
    def finish_raffle(raffle_id: str, user_id: str = Depends(current_user_id), s: Services = Depends(svc)):
        raffle = s.authority.finish_raffle(raffle_id, user_id)
        return s.raffles.public_raffle(raffle, reveal=True)

    # ---------------- Reservas ----------------
    @app.post("/raffles/{raffle_id}/tickets/reserve", response_model=BulkReserveResponse)
    def bulk_reserve(raffle_id: str, req: BulkReserveRequest, s: Services = Depends(svc)):
        res = s.reservations.bulk_reserve(raffle_id, req.ticket_ids, req.buyer.to_buyer())
        return {
            "reserved_ids": res.reserved_ids,
            "reserved_numbers": res.reserved_numbers,
            "whatsapp_link": res.whatsapp_link,
        }

    @app.post("/raffles/{raffle_id}/tickets/{ticket_id}/reserve", response_model=ReserveResponse)
    def reserve(raffle_id: str, ticket_id: str, req: ReserveRequest, s: Services = Depends(svc)):
        res = s.reservations.reserve(raffle_id, ticket_id, req.buyer.to_buyer())
        return {"ticket": res.ticket, "whatsapp_link": res.whatsapp_link}

    # ---------------- Dueño ----------------
    @app.post("/raffles/{raffle_id}/tickets/{ticket_id}/cancel")
    def cancel_reservation(
        raffle_id: str, ticket_id: str, user_id: str = Depends(current_user_id), s: Services = Depends(svc)
    ):
        return {"ticket": s.reservations.cancel(raffle_id, ticket_id, user_id)}

    @app.put("/raffles/{raffle_id}/tickets/{ticket_id}/status")
    def force_status(
        raffle_id: str,
        ticket_id: str,
        req: ForceStatusRequest,
        user_id: str = Depends(current_user_id),
        s: Services = Depends(svc),
    ):
        buyer = req.buyer.to_buyer() if req.buyer else None
        return {"ticket": s.authority.force_status(raffle_id, ticket_id, user_id, req.status, buyer)}

    # ---------------- Pagos ----------------
    @app.post("/raffles/{raffle_id}/payments/link", response_model=PaymentLinkResponse)
    def payment_link(
        raffle_id: str,
        req: PaymentLinkRequestBody,
        device: str = Depends(device_id),
        s: Services = Depends(svc),
    ):
        res = s.payments_for(device).request_payment_link(raffle_id, req.ticket_ids, req.buyer.to_buyer())
        return {
            "payment_link": res.payment_link,
            "reference_id": res.reference_id,
            "ticket_ids": [str(t["id"]) for t in res.tickets],
            "marker": res.pending.to_marker(),
        }

    @app.post("/raffles/{raffle_id}/payments/reconcile", response_model=ReconcileResponse)
    def reconcile(
        raffle_id: str,
        payment: Optional[str] = Query(default=None),
        device: str = Depends(device_id),
        s: Services = Depends(svc),
    ):
        res = s.payments_for(device).reconcile_quietly(raffle_id)
        return {
            "outcome": res.outcome.value if res else "error",
            "sold_ids": res.sold_ids if res else [],
            "skipped_ids": res.skipped_ids if res else [],
            "notice": return_notice(payment),
        }

    # ---------------- Admin ----------------
    @app.post("/admin/cleanup_reservations", dependencies=[Depends(require_admin)])
    def admin_cleanup_reservations(s: Services = Depends(svc)):
        """Libera reservas vencidas de todas las rifas activas."""
        return {"ok": True, "released": sweep_active_raffles(s)}


# --------- Ejecutable local ---------
if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", "8000"))
    uvicorn.run("talonario.app:create_app", factory=True, host="0.0.0.0", port=port, proxy_headers=True)
