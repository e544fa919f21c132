"""Errores de dominio.

Cada error lleva el status HTTP con el que se expone y un mensaje apto para
mostrar al comprador u organizador. La app los convierte en JSON en un solo
handler (ver ``talonario.app``).
"""
from typing import Any, Dict, List, Optional


class RaffleError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def extra(self) -> Dict[str, Any]:
        return {}


class ValidationError(RaffleError):
    status_code = 422


class AlreadyTaken(RaffleError):
    status_code = 409

    def __init__(self, ticket_ids: List[str], message: str = "Este número ya no está disponible"):
        super().__init__(message)
        self.ticket_ids = list(ticket_ids)

    def extra(self) -> Dict[str, Any]:
        return {"ticket_ids": self.ticket_ids}


class PaymentProviderError(RaffleError):
    status_code = 502

    def __init__(self, message: str, provider_message: Optional[str] = None):
        super().__init__(message)
        self.provider_message = provider_message

    def extra(self) -> Dict[str, Any]:
        return {"provider_message": self.provider_message}


class PartialBulkFailure(RaffleError):
    status_code = 409

    def __init__(self, result: Any):
        failed = ", ".join(str(n) for n in result.failed_numbers) or "-"
        super().__init__(f"Algunos números ya no estaban disponibles: {failed}")
        self.result = result

    def extra(self) -> Dict[str, Any]:
        return {
            "reserved_ids": self.result.reserved_ids,
            "failed_ids": self.result.failed_ids,
            "reserved_numbers": self.result.reserved_numbers,
            "failed_numbers": self.result.failed_numbers,
            "whatsapp_link": self.result.whatsapp_link,
        }


class NotFound(RaffleError):
    status_code = 404


class Forbidden(RaffleError):
    status_code = 403


class RaffleClosed(RaffleError):
    status_code = 409

    def __init__(self, message: str = "El talonario está finalizado"):
        super().__init__(message)


class ActiveRaffleExists(RaffleError):
    status_code = 409

    def __init__(self, message: str = "Ya tenés un talonario activo"):
        super().__init__(message)


class StoreError(RaffleError):
    """Falla del almacén remoto (red, PostgREST)."""

    status_code = 503
