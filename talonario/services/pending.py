"""Marca de pago pendiente.

Se guarda al pedir el link de pago y se consulta una vez cuando el comprador
vuelve. Hay un único lugar por dispositivo: guardar una marca nueva pisa la
anterior.
"""
from __future__ import annotations

import datetime as dt
import json
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from talonario.core.settings import settings
from talonario.services.utils import epoch_millis, now_utc


@dataclass
class PendingPayment:
    raffle_id: str
    ticket_ids: List[str]
    reference_id: str
    created_at_ms: int = 0

    def is_expired(self, now: dt.datetime, ttl_hours: int) -> bool:
        age_ms = epoch_millis(now) - int(self.created_at_ms)
        return age_ms > ttl_hours * 3600 * 1000

    def to_marker(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"raffleId": self.raffle_id}
        if len(self.ticket_ids) == 1:
            out["ticketId"] = self.ticket_ids[0]
        else:
            out["ticketIds"] = list(self.ticket_ids)
        out["providerReferenceId"] = self.reference_id
        out["creationEpochMillis"] = int(self.created_at_ms)
        return out

    @classmethod
    def from_marker(cls, data: Dict[str, Any]) -> "PendingPayment":
        ids = [data["ticketId"]] if data.get("ticketId") else list(data.get("ticketIds") or [])
        return cls(
            raffle_id=str(data["raffleId"]),
            ticket_ids=[str(t) for t in ids],
            reference_id=str(data["providerReferenceId"]),
            created_at_ms=int(data.get("creationEpochMillis") or 0),
        )


class PendingPaymentRepository(ABC):
    @abstractmethod
    def get(self) -> Optional[PendingPayment]: ...

    @abstractmethod
    def set(self, pending: PendingPayment) -> None: ...

    @abstractmethod
    def clear(self) -> None: ...


class MemoryPendingPaymentRepository(PendingPaymentRepository):
    def __init__(self, pending: Optional[PendingPayment] = None):
        self._pending = pending

    def get(self) -> Optional[PendingPayment]:
        return self._pending

    def set(self, pending: PendingPayment) -> None:
        self._pending = pending

    def clear(self) -> None:
        self._pending = None


class JsonFilePendingPaymentRepository(PendingPaymentRepository):
    def __init__(self, path: str | Path):
        self.path = Path(path)

    def get(self) -> Optional[PendingPayment]:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return PendingPayment.from_marker(data)
        except (ValueError, KeyError, TypeError) as e:
            # marca corrupta: se descarta
            logger.warning(f"Marca de pago ilegible en {self.path}: {e}")
            self.clear()
            return None

    def set(self, pending: PendingPayment) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(pending.to_marker()), encoding="utf-8")

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


class DevicePendingPayments:
    """Marcas pendientes por dispositivo (header X-Device-Id), un lugar por dispositivo.

    Solo se guardan dispositivos que tienen una marca: ``get`` no crea nada,
    ``clear`` borra la entrada y cada ``set`` descarta las marcas de otros
    dispositivos que ya pasaron ``ttl_hours``.
    """

    def __init__(self, ttl_hours: Optional[int] = None, clock: Callable[[], dt.datetime] = now_utc):
        self.ttl_hours = ttl_hours or settings.pending_payment_ttl_hours
        self.clock = clock
        self._markers: Dict[str, PendingPayment] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._markers)

    def for_device(self, device_id: str) -> "DeviceSlot":
        return DeviceSlot(self, device_id)

    def _get(self, device_id: str) -> Optional[PendingPayment]:
        with self._lock:
            return self._markers.get(device_id)

    def _set(self, device_id: str, pending: PendingPayment) -> None:
        now = self.clock()
        with self._lock:
            stale = [d for d, p in self._markers.items() if d != device_id and p.is_expired(now, self.ttl_hours)]
            for d in stale:
                del self._markers[d]
            self._markers[device_id] = pending
        if stale:
            logger.info(f"Marcas de pago vencidas descartadas: {len(stale)}")

    def _clear(self, device_id: str) -> None:
        with self._lock:
            self._markers.pop(device_id, None)


class DeviceSlot(PendingPaymentRepository):
    def __init__(self, registry: DevicePendingPayments, device_id: str):
        self.registry = registry
        self.device_id = device_id

    def get(self) -> Optional[PendingPayment]:
        return self.registry._get(self.device_id)

    def set(self, pending: PendingPayment) -> None:
        self.registry._set(self.device_id, pending)

    def clear(self) -> None:
        self.registry._clear(self.device_id)
