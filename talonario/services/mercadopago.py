"""Integración con Mercado Pago: links de pago (Preferences) y búsqueda de pagos."""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests
from loguru import logger

from talonario.core.errors import PaymentProviderError
from talonario.core.settings import settings
from talonario.services.utils import is_local_url

SETTLED = "settled"
FAILED = "failed"
PENDING = "pending"

_FAILED_STATUSES = {"rejected", "cancelled"}


def classify(status: Optional[str]) -> str:
    s = (status or "").strip().lower()
    if s == "approved":
        return SETTLED
    if s in _FAILED_STATUSES:
        return FAILED
    return PENDING


@dataclass
class PaymentLinkRequest:
    credential: str
    title: str
    description: str
    unit_price: float
    quantity: int
    external_reference: str
    currency: str = "ARS"
    buyer_email: Optional[str] = None
    buyer_name: Optional[str] = None
    # URL de vuelta a la rifa, sin query; None si no hay que mandar back_urls
    return_url: Optional[str] = None
    notification_url: Optional[str] = None


@dataclass
class PaymentLink:
    url: str
    reference_id: str


@dataclass
class ProviderPayment:
    id: str
    status: str

    @property
    def outcome(self) -> str:
        return classify(self.status)


def return_url_for(base_url: str, raffle_id: str) -> Optional[str]:
    """URL de vuelta; None en entornos locales (el proveedor no puede llegar)."""
    if not raffle_id or is_local_url(base_url):
        return None
    return f"{base_url.rstrip('/')}/raffle/{raffle_id}"


class PaymentProvider(ABC):
    @abstractmethod
    def create_payment_link(self, req: PaymentLinkRequest) -> PaymentLink: ...

    @abstractmethod
    def search_payments(self, credential: str, reference_id: str) -> List[ProviderPayment]: ...


class MercadoPagoClient(PaymentProvider):
    def __init__(
        self,
        api_url: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.api_url = (api_url or settings.mercadopago_api_url).rstrip("/")
        self.timeout = timeout or settings.http_timeout_seconds
        self.session = session or requests.Session()

    @staticmethod
    def _headers(credential: str) -> Dict[str, str]:
        return {"Content-Type": "application/json", "Authorization": f"Bearer {credential}"}

    @staticmethod
    def preference_body(req: PaymentLinkRequest) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "items": [
                {
                    "title": req.title,
                    "description": req.description,
                    "quantity": req.quantity,
                    "unit_price": req.unit_price,
                    "currency_id": req.currency,
                }
            ],
            "external_reference": req.external_reference,
            "payment_methods": {"excluded_payment_types": [], "installments": 1},
            # máximo 22 caracteres en el resumen de la tarjeta
            "statement_descriptor": req.title[:22],
        }
        if req.return_url:
            body["back_urls"] = {
                kind: f"{req.return_url}?payment={kind}" for kind in ("success", "failure", "pending")
            }
            body["auto_return"] = "approved"
        if req.buyer_email:
            body["payer"] = {"email": req.buyer_email}
            if req.buyer_name:
                body["payer"]["name"] = req.buyer_name
        if req.notification_url:
            body["notification_url"] = req.notification_url
        return body

    @staticmethod
    def _error_message(resp: requests.Response) -> str:
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if isinstance(data, dict) and data.get("message"):
            return str(data["message"])
        return f"Error HTTP: {resp.status_code}"

    def create_payment_link(self, req: PaymentLinkRequest) -> PaymentLink:
        if not req.credential:
            raise PaymentProviderError("Access token requerido")
        if req.unit_price <= 0:
            raise PaymentProviderError("El precio debe ser mayor a 0")

        try:
            resp = self.session.post(
                f"{self.api_url}/checkout/preferences",
                json=self.preference_body(req),
                headers=self._headers(req.credential),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning(f"Mercado Pago inaccesible: {e}")
            raise PaymentProviderError("No se pudo contactar a Mercado Pago", str(e))

        if not resp.ok:
            msg = self._error_message(resp)
            logger.warning(f"Mercado Pago rechazó la preferencia: {msg}")
            raise PaymentProviderError("No se pudo crear el link de pago", msg)

        try:
            data = resp.json()
            link, pref_id = data["init_point"], data["id"]
        except (ValueError, KeyError, TypeError):
            raise PaymentProviderError("Respuesta inválida de Mercado Pago")
        return PaymentLink(url=str(link), reference_id=str(pref_id))

    def search_payments(self, credential: str, reference_id: str) -> List[ProviderPayment]:
        if not credential:
            raise PaymentProviderError("Access token requerido")
        try:
            resp = self.session.get(
                f"{self.api_url}/v1/payments/search",
                params={"preference_id": reference_id},
                headers={"Authorization": f"Bearer {credential}"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise PaymentProviderError("No se pudo contactar a Mercado Pago", str(e))

        if not resp.ok:
            raise PaymentProviderError("No se pudo consultar el pago", self._error_message(resp))

        try:
            results = resp.json().get("results") or []
        except (ValueError, AttributeError):
            raise PaymentProviderError("Respuesta inválida de Mercado Pago")
        return [
            ProviderPayment(id=str(p.get("id", "")), status=str(p.get("status", "")))
            for p in results
            if isinstance(p, dict)
        ]
