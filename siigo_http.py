"""
Capa HTTP hacia la API de Siigo Nube.

- RequestsTransport: ejecuta el intercambio con `requests` fuera del event loop.
- execute_with_recovery: política única de reintento para llamadas autenticadas:
    401 → token forzado + 1 reintento
    429 → espera Retry-After (o 1s) + 1 reintento con el mismo token
  Cualquier otro estado se devuelve tal cual; un no-2xx final es UpstreamHttpError.
"""
import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, Optional
from urllib.parse import urlsplit

import requests

import db
from errors import AuthRateLimitedError, UpstreamHttpError, upstream_error_message
from runtime_context import current_request_id

if TYPE_CHECKING:
    from siigo_auth import TokenManager

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

DEFAULT_RETRY_AFTER = 1.0
# Pausa fija antes de pedir un token nuevo cuando la autenticación quedó limitada.
AUTH_RATE_LIMIT_PAUSE = 1.2


@dataclass
class UpstreamResponse:
    status: int
    headers: Mapping[str, str] = field(default_factory=dict)
    text: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def header(self, name: str) -> Optional[str]:
        """Lectura de cabecera sin distinguir mayúsculas."""
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None

    def json(self) -> Any:
        """Cuerpo JSON; texto vacío o inválido se trata como objeto vacío."""
        if not self.text or not self.text.strip():
            return {}
        try:
            return json.loads(self.text)
        except ValueError:
            return {}


@dataclass
class UpstreamRequest:
    method: str
    url: str
    params: Optional[dict] = None
    body: Any = None


@dataclass
class UpstreamResult:
    status: int
    data: Any


class RequestsTransport:
    """Transporte HTTP real: una sesión `requests` compartida por todo el proceso."""

    def __init__(self, timeout: float = 30.0, session: Optional[requests.Session] = None):
        self._timeout = timeout
        self._session = session or requests.Session()

    def _send_sync(self, method: str, url: str, headers: dict,
                   params: Optional[dict], json_body: Any) -> UpstreamResponse:
        try:
            resp = self._session.request(
                method,
                url,
                headers=headers,
                params=params,
                json=json_body,
                timeout=self._timeout,
            )
        except requests.exceptions.Timeout as exc:
            raise UpstreamHttpError(
                "Timeout: La solicitud a Siigo tardó demasiado", status=504
            ) from exc
        except requests.exceptions.ConnectionError as exc:
            raise UpstreamHttpError(
                "Error de conexión con el servidor de Siigo", status=502
            ) from exc
        return UpstreamResponse(status=resp.status_code, headers=resp.headers, text=resp.text or "")

    async def send(self, method: str, url: str, *, headers: dict,
                   params: Optional[dict] = None, json_body: Any = None) -> UpstreamResponse:
        return await asyncio.to_thread(self._send_sync, method, url, headers, params, json_body)

    def close(self):
        self._session.close()


def retry_after_seconds(response: UpstreamResponse) -> float:
    """Segundos a esperar según Retry-After; 1 si falta, no es numérico o no es positivo."""
    raw = response.header("Retry-After")
    try:
        seconds = float(raw) if raw is not None else DEFAULT_RETRY_AFTER
    except ValueError:
        return DEFAULT_RETRY_AFTER
    return seconds if seconds > 0 else DEFAULT_RETRY_AFTER


def siigo_headers(token: str, partner_id: str) -> dict:
    return {
        "Authorization": f"Bearer {token}",
        "Partner-Id": partner_id,
        "Content-Type": "application/json",
        "Accept": "application/json",
        "Cache-Control": "no-cache",
    }


def _error_body(response: UpstreamResponse) -> Any:
    """Cuerpo de error parseado, o el texto crudo si no es JSON."""
    if not response.text.strip():
        return {}
    try:
        return json.loads(response.text)
    except ValueError:
        return {"raw_response": response.text}


def _safe_log_call(**kwargs):
    """Registra la llamada en la bitácora sin interrumpir el flujo principal."""
    if not db.is_ready():
        return
    try:
        db.log_upstream_call(**kwargs)
    except Exception as exc:
        logger.warning("No se pudo registrar la llamada en la bitácora: %s", exc)


async def _token_tolerating_rate_limit(token_manager: "TokenManager", sleep: Sleep) -> str:
    try:
        return await token_manager.get_token()
    except AuthRateLimitedError:
        logger.warning("Autenticación limitada (429); reintentando en %.1fs", AUTH_RATE_LIMIT_PAUSE)
        await sleep(AUTH_RATE_LIMIT_PAUSE)
        # Sin force_refresh: quienes esperaban la adquisición fallida comparten la siguiente.
        return await token_manager.get_token()


async def execute_with_recovery(
    token_manager: "TokenManager",
    transport,
    request: UpstreamRequest,
    sleep: Sleep = asyncio.sleep,
) -> UpstreamResult:
    """
    Ejecuta una llamada lógica a Siigo con recuperación de 401/429 (un reintento por clase).
    Retorna UpstreamResult(status, data); 204 devuelve data=None.
    Lanza UpstreamHttpError si la respuesta final no es 2xx.
    """
    path = urlsplit(request.url).path

    async def _send(bearer: str, retried: bool) -> UpstreamResponse:
        started_at = time.perf_counter()
        response = await transport.send(
            request.method,
            request.url,
            headers=siigo_headers(bearer, token_manager.partner_id),
            params=request.params,
            json_body=request.body,
        )
        duration_ms = int((time.perf_counter() - started_at) * 1000)
        logger.debug("%s %s -> %s (%sms)", request.method, path, response.status, duration_ms)
        _safe_log_call(
            request_id=current_request_id.get(),
            method=request.method,
            path=path,
            status=response.status,
            success=response.ok,
            duration_ms=duration_ms,
            retried=retried,
        )
        return response

    token = await _token_tolerating_rate_limit(token_manager, sleep)
    response = await _send(token, retried=False)

    if response.status == 401:
        logger.info("Siigo respondió 401 en %s %s; renovando token", request.method, path)
        token = await token_manager.get_token(force_refresh=True)
        response = await _send(token, retried=True)
    elif response.status == 429:
        wait = retry_after_seconds(response)
        logger.warning("Siigo respondió 429 en %s %s; esperando %.1fs", request.method, path, wait)
        await sleep(wait)
        response = await _send(token, retried=True)

    if response.status == 204:
        return UpstreamResult(status=204, data=None)

    if not response.ok:
        body = _error_body(response)
        raise UpstreamHttpError(
            upstream_error_message(body, f"Error en la API de Siigo ({response.status})"),
            status=response.status,
            details=body,
        )

    return UpstreamResult(status=response.status, data=response.json())
