"""
Taxonomía de errores del BFF.
Cada excepción sabe convertirse al sobre JSON que consume la UI:
{"success": false, "error": "...", "details": ...}
"""
from typing import Any, Optional


class SiigoError(Exception):
    """Error base. `status` es el código HTTP con el que se responde."""
    default_status = 500

    def __init__(self, message: str, status: Optional[int] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        self.status = status or self.default_status
        self.details = details

    def to_envelope(self) -> dict:
        envelope = {"success": False, "error": self.message}
        if self.details is not None:
            envelope["details"] = self.details
        return envelope


class ConfigurationError(SiigoError):
    """Faltan credenciales u otra configuración obligatoria."""


class AuthError(SiigoError):
    """Siigo rechazó el intercambio de credenciales por token."""


class AuthRateLimitedError(AuthError):
    """Siigo limitó la autenticación (429) dos veces seguidas."""
    default_status = 429


class UpstreamHttpError(SiigoError):
    """Respuesta no-2xx de la API tras agotar la política de reintentos."""
    default_status = 502


class ValidationError(SiigoError):
    """El payload del cliente no cumple la forma mínima; no se llama a Siigo."""
    default_status = 400


def error_list(body: Any) -> list:
    """Lista de errores de Siigo; viene como `errors` o `Errors`."""
    if not isinstance(body, dict):
        return []
    errors = body.get("errors")
    if not isinstance(errors, list):
        errors = body.get("Errors")
    return errors if isinstance(errors, list) else []


def error_field(error: Any, name: str) -> Any:
    """Lee `code`/`Code`, `message`/`Message`, `params`/`Params`."""
    if not isinstance(error, dict):
        return None
    value = error.get(name)
    if value is None:
        value = error.get(name.capitalize())
    return value


def upstream_error_message(body: Any, default: str) -> str:
    """Mensaje legible a partir del cuerpo de error de Siigo."""
    errors = error_list(body)
    if errors:
        message = error_field(errors[0], "message")
        if message:
            return str(message)
    if isinstance(body, dict):
        for key in ("message", "error_description", "error"):
            value = body.get(key)
            if value and isinstance(value, str):
                return value
    return default
