#!/usr/bin/env python3
"""Runner mínimo que libera reservas vencidas.

Ejemplo:
  python run_sweep.py                 # todas las rifas activas
  python run_sweep.py --raffle <id>   # una sola rifa

"""
import argparse

from loguru import logger

from talonario.core.logging import setup_logging
from talonario.core.settings import make_client
from talonario.services.reservation import RAFFLE_ACTIVE, ReservationEngine
from talonario.services.store import SupabaseTicketStore


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--raffle", default=None, help="ID de la rifa (por defecto, todas las activas)")
    args = parser.parse_args()

    setup_logging()
    engine = ReservationEngine(SupabaseTicketStore(make_client()))

    if args.raffle:
        raffle_ids = [args.raffle]
    else:
        raffle_ids = [r["id"] for r in engine.store.list_raffles(status=RAFFLE_ACTIVE)]

    total = 0
    for rid in raffle_ids:
        released = engine.expire_sweep(rid)
        total += len(released)
        print(f"{rid}: {len(released)} reservas liberadas")
    logger.info(f"Sweep manual terminado: {total} reservas liberadas")


if __name__ == '__main__':
    main()
