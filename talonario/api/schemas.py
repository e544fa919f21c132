# talonario/api/schemas.py
from typing import Optional, Any, Dict, List
from pydantic import BaseModel, EmailStr

from talonario.services.tickets import Buyer


# -------- Comprador --------
class BuyerInfo(BaseModel):
    name: str = ""
    email: Optional[EmailStr] = None
    phone: Optional[str] = None

    def to_buyer(self) -> Buyer:
        return Buyer.clean(self.name, self.email, self.phone)


# -------- Rifas --------
class CreateRaffleRequest(BaseModel):
    title: str
    description: Optional[str] = ""
    price_per_number: float
    total_numbers: int = 50
    whatsapp_number: str


class UpdateRaffleRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    price_per_number: Optional[float] = None
    whatsapp_number: Optional[str] = None
    mercadopago_access_token: Optional[str] = None
    mercadopago_enabled: Optional[bool] = None


# -------- Reservas --------
class ReserveRequest(BaseModel):
    buyer: BuyerInfo


class BulkReserveRequest(BaseModel):
    ticket_ids: List[str]
    buyer: BuyerInfo


class ReserveResponse(BaseModel):
    ticket: Dict[str, Any]
    whatsapp_link: str


class BulkReserveResponse(BaseModel):
    reserved_ids: List[str]
    reserved_numbers: List[int]
    whatsapp_link: Optional[str] = None


# -------- Dueño --------
class ForceStatusRequest(BaseModel):
    status: str
    buyer: Optional[BuyerInfo] = None


# -------- Pagos --------
class PaymentLinkRequestBody(BaseModel):
    ticket_ids: List[str]
    buyer: BuyerInfo


class PaymentLinkResponse(BaseModel):
    payment_link: str
    reference_id: str
    ticket_ids: List[str]
    marker: Dict[str, Any]


class ReconcileResponse(BaseModel):
    outcome: str
    sold_ids: List[str] = []
    skipped_ids: List[str] = []
    notice: Optional[Dict[str, str]] = None
