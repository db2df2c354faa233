"""
Configuración del BFF de facturación Siigo.
Todo se lee de variables de entorno (cargadas con python-dotenv en main.py).
Las credenciales pueden estar vacías al arrancar: se validan en la primera
solicitud de token.
"""
import os
from dataclasses import dataclass
from typing import Optional


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _parse_csv(value: Optional[str]) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_optional_int(value: Optional[str]) -> Optional[int]:
    if value is None or not value.strip():
        return None
    return int(value)


@dataclass(frozen=True)
class Credential:
    """Credenciales de la API de Siigo. Nunca se modifican en runtime."""
    username: str
    access_key: str
    partner_id: str

    def missing(self) -> list[str]:
        """Nombres de las variables de entorno vacías, en orden fijo."""
        fields = [
            ("SIIGO_USERNAME", self.username),
            ("SIIGO_ACCESS_KEY", self.access_key),
            ("SIIGO_PARTNER_ID", self.partner_id),
        ]
        return [name for name, value in fields if not value]


@dataclass(frozen=True)
class Settings:
    base_url: str = "https://api.siigo.com/v1"
    auth_url: str = "https://api.siigo.com/auth"
    username: str = ""
    access_key: str = ""
    partner_id: str = ""
    purchases_path: str = "purchases"
    purchases_create_path: str = "purchases"
    vouchers_path: str = "vouchers"
    default_purchase_document_id: Optional[int] = None
    default_payment_id: Optional[int] = None
    request_timeout: float = 30.0
    operation_timeout: float = 120.0
    debug: bool = False
    cors_origins: tuple[str, ...] = ("*",)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            base_url=os.getenv("SIIGO_BASE_URL", "https://api.siigo.com/v1").rstrip("/"),
            auth_url=os.getenv("SIIGO_AUTH_URL", "https://api.siigo.com/auth"),
            username=os.getenv("SIIGO_USERNAME", ""),
            access_key=os.getenv("SIIGO_ACCESS_KEY", ""),
            partner_id=os.getenv("SIIGO_PARTNER_ID", ""),
            purchases_path=os.getenv("COMPRAS_URL", "purchases"),
            purchases_create_path=os.getenv("SIIGO_PURCHASES_CREATE_URL", "purchases"),
            vouchers_path=os.getenv("SIIGO_VOUCHERS_URL", "vouchers"),
            default_purchase_document_id=_parse_optional_int(os.getenv("SIIGO_FC_DOCUMENT_ID")),
            default_payment_id=_parse_optional_int(os.getenv("SIIGO_DEFAULT_PAYMENT_ID")),
            request_timeout=float(os.getenv("SIIGO_REQUEST_TIMEOUT", "30")),
            operation_timeout=float(os.getenv("SIIGO_OPERATION_TIMEOUT", "120")),
            debug=_parse_bool(os.getenv("SIIGO_DEBUG")),
            cors_origins=tuple(_parse_csv(os.getenv("CORS_ORIGINS", "*"))),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    def credential(self) -> Credential:
        return Credential(
            username=self.username,
            access_key=self.access_key,
            partner_id=self.partner_id,
        )

    def url(self, path: str) -> str:
        """Une la URL base con un path relativo de la API."""
        return f"{self.base_url}/{path.lstrip('/')}"


def mask_secret(value: str, visible: int = 4) -> str:
    """Enmascara secretos en logs de depuración."""
    if not value:
        return ""
    if len(value) <= visible:
        return "*" * len(value)
    return f"{value[:visible]}{'*' * (len(value) - visible)}"
