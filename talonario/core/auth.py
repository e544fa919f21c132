from typing import Callable, Optional

from fastapi import Header
from loguru import logger

from talonario.core.errors import Forbidden
from talonario.core.settings import settings

# token -> user id (None si no es válido). La app lo fija al arrancar.
_resolver: Optional[Callable[[str], Optional[str]]] = None


def supabase_resolver(client) -> Callable[[str], Optional[str]]:
    def resolve(token: str) -> Optional[str]:
        try:
            res = client.auth.get_user(token)
        except Exception as e:
            logger.info(f"Token rechazado por Supabase Auth: {e}")
            return None
        user = getattr(res, "user", None)
        return str(user.id) if user else None

    return resolve


def memory_resolver(token: str) -> Optional[str]:
    # solo desarrollo: el token es el id de usuario
    return token or None


def set_resolver(resolver: Callable[[str], Optional[str]]) -> None:
    global _resolver
    _resolver = resolver


def _bearer(authorization: str) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()


def optional_user_id(authorization: str = Header(default="")) -> Optional[str]:
    token = _bearer(authorization)
    if not token or _resolver is None:
        return None
    return _resolver(token)


def current_user_id(authorization: str = Header(default="")) -> str:
    user_id = optional_user_id(authorization)
    if not user_id:
        raise Forbidden("Iniciá sesión para continuar")
    return user_id


def require_admin(x_admin_key: str = Header(default="")) -> None:
    if not settings.admin_api_key or x_admin_key != settings.admin_api_key:
        raise Forbidden("Admin key inválida")
