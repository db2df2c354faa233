"""
Autenticación contra Siigo Nube con caché de token por proceso.

El token se renueva 5 minutos antes de su vencimiento declarado. Las solicitudes
concurrentes sin `force_refresh` comparten una sola adquisición en curso; una
renovación forzada siempre inicia una adquisición nueva (la última en terminar
queda en caché).
"""
import asyncio
import base64
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from config import Credential, mask_secret
from errors import AuthError, AuthRateLimitedError, ConfigurationError, UpstreamHttpError, upstream_error_message
from siigo_http import Sleep, UpstreamResponse, retry_after_seconds

logger = logging.getLogger(__name__)

SAFETY_MARGIN_SECONDS = 300
DEFAULT_EXPIRES_IN = 3600
MAX_AUTH_ATTEMPTS = 2


@dataclass(frozen=True)
class CachedToken:
    value: str
    expires_at: float

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at


class TokenManager:
    """Entrega un bearer token válido para la API de Siigo minimizando llamadas a /auth."""

    def __init__(
        self,
        credential: Credential,
        auth_url: str,
        transport,
        clock: Callable[[], float] = time.time,
        sleep: Sleep = asyncio.sleep,
    ):
        self._credential = credential
        self._auth_url = auth_url
        self._transport = transport
        self._clock = clock
        self._sleep = sleep
        self._cached: Optional[CachedToken] = None
        self._inflight: Optional[asyncio.Task] = None

    @property
    def partner_id(self) -> str:
        return self._credential.partner_id

    @property
    def cached(self) -> Optional[CachedToken]:
        return self._cached

    def invalidate(self):
        """Descarta el token en caché sin llamar a la red."""
        self._cached = None

    async def get_token(self, force_refresh: bool = False) -> str:
        missing = self._credential.missing()
        if missing:
            raise ConfigurationError(f"Credenciales de Siigo faltantes: {', '.join(missing)}")

        if not force_refresh:
            cached = self._cached
            if cached is not None and cached.is_valid(self._clock()):
                return cached.value
            inflight = self._inflight
            if inflight is not None and not inflight.done():
                return await asyncio.shield(inflight)

        task = asyncio.ensure_future(self._acquire())
        self._inflight = task
        # La marca se limpia al terminar la tarea, no al salir el llamador (que puede ser cancelado).
        task.add_done_callback(self._clear_inflight)
        return await asyncio.shield(task)

    def _clear_inflight(self, task: asyncio.Task):
        if self._inflight is task:
            self._inflight = None

    def _auth_request(self) -> tuple[dict, dict]:
        cred = self._credential
        basic = base64.b64encode(f"{cred.username}:{cred.access_key}".encode()).decode()
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": f"Basic {basic}",
            "Partner-Id": cred.partner_id,
        }
        # Siigo exige las credenciales también en el cuerpo.
        body = {
            "username": cred.username,
            "access_key": cred.access_key,
            "partner_id": cred.partner_id,
        }
        return headers, body

    async def _exchange(self) -> UpstreamResponse:
        headers, body = self._auth_request()
        try:
            return await self._transport.send("POST", self._auth_url, headers=headers, json_body=body)
        except UpstreamHttpError as exc:
            logger.error("Error en la petición de autenticación: %s", exc.message)
            raise AuthError(f"Error en la petición: {exc.message}", status=exc.status) from exc

    async def _acquire(self) -> str:
        last_limited: dict = {}
        for attempt in range(1, MAX_AUTH_ATTEMPTS + 1):
            response = await self._exchange()
            data = response.json()
            if not isinstance(data, dict):
                data = {}

            if response.status == 429:
                last_limited = data
                if attempt < MAX_AUTH_ATTEMPTS:
                    wait = retry_after_seconds(response)
                    logger.warning("Autenticación Siigo limitada (429); reintento en %.1fs", wait)
                    await self._sleep(wait)
                continue

            if not response.ok:
                message = upstream_error_message(data, "Error desconocido")
                logger.error("Error en autenticación Siigo (%s): %s", response.status, message)
                raise AuthError(
                    f"Error en autenticación: {message}",
                    status=response.status,
                    details={"status": response.status, "response": data},
                )

            token = data.get("access_token")
            if not token:
                raise AuthError("No se recibió token de acceso", details=data)

            expires_in = _expires_in(data.get("expires_in"))
            self._cached = CachedToken(
                value=token,
                expires_at=self._clock() + expires_in - SAFETY_MARGIN_SECONDS,
            )
            logger.info("Token Siigo obtenido (expira en %ss)", int(expires_in))
            logger.debug("Token en caché: %s", mask_secret(token))
            return token

        logger.error("Rate limit de autenticación agotado (429)")
        raise AuthRateLimitedError(
            "Rate limit de autenticación agotado (429)",
            details={"status": 429, "response": last_limited},
        )


def _expires_in(raw) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return DEFAULT_EXPIRES_IN
    return value if value > 0 else DEFAULT_EXPIRES_IN
