"""Configuración centralizada de logs (loguru)."""

import sys

from loguru import logger

from talonario.core.settings import settings

log_format = " | ".join(
    (
        "<lk>{time:YYYY-MM-DD HH:mm:ss.SSS}</>",
        "<lvl>{level:<8}</>",
        "<c>{name}:{function}:{line}</>",
        "{message}",
    )
)

_configured = False


def setup_logging(level: str = "") -> None:
    global _configured
    if _configured:
        return
    # sacar el handler por defecto para no duplicar salida
    logger.remove()
    logger.add(sys.stdout, format=log_format, level=level or settings.log_level)
    _configured = True
