"""
Servidor HTTP del BFF de facturación Siigo.
Expone a la UI endpoints JSON para consultar, crear, editar y eliminar
documentos de Siigo Nube. Listo para producción en Docker.
Con bitácora PostgreSQL opcional de las llamadas a Siigo.
"""
import asyncio
import logging
import os
import uuid
from contextlib import asynccontextmanager
from typing import Any, Optional

from dotenv import load_dotenv
from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException
import uvicorn

# Cargar variables de entorno (override=True para producción)
load_dotenv(override=True)

from config import Settings, mask_secret
from errors import SiigoError
from runtime_context import current_request_id
from siigo_auth import TokenManager
from siigo_documents import SiigoClient
from siigo_http import RequestsTransport
from siigo_payloads import project_fields
import db

logger = logging.getLogger(__name__)

APP_VERSION = "1.0.0"

settings = Settings.from_env()
logging.basicConfig(
    level="DEBUG" if settings.debug else settings.log_level,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

# Cliente compartido por todo el proceso (una caché de token por réplica)
siigo: Optional[SiigoClient] = None


def build_client(app_settings: Settings) -> SiigoClient:
    transport = RequestsTransport(timeout=app_settings.request_timeout)
    token_manager = TokenManager(app_settings.credential(), app_settings.auth_url, transport)
    return SiigoClient(app_settings, token_manager, transport)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Crea el cliente Siigo y la bitácora al arrancar, limpia al cerrar."""
    global siigo
    try:
        db.init_db()
        logger.info("Conexión a PostgreSQL establecida")
    except Exception as e:
        logger.warning("Error al conectar con PostgreSQL: %s", e)
        logger.warning("El servidor funcionará SIN bitácora de llamadas")
    siigo = build_client(settings)
    logger.debug(
        "Siigo base=%s usuario=%s partner=%s clave=%s",
        settings.base_url, settings.username, settings.partner_id, mask_secret(settings.access_key),
    )
    missing = settings.credential().missing()
    if missing:
        logger.warning("Credenciales Siigo incompletas (%s); la primera llamada fallará", ", ".join(missing))
    yield
    # Cleanup
    siigo.transport.close()
    siigo = None
    db.close_db()


# FastAPI app
app = FastAPI(
    title="Facturación Siigo API",
    description="Backend para la UI de facturación sobre la API de Siigo Nube",
    version=APP_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context(request: Request, call_next):
    """Asigna un id de correlación a cada request para logs y bitácora."""
    request_id = (request.headers.get("X-Request-ID") or "").strip()
    if not request_id or len(request_id) > 128:
        request_id = uuid.uuid4().hex
    current_request_id.set(request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ─── Manejo de errores ───────────────────────────────────────────

@app.exception_handler(SiigoError)
async def siigo_error_handler(request: Request, exc: SiigoError):
    logger.error("[%s %s] %s (%s)", request.method, request.url.path, exc.message, exc.status)
    return JSONResponse(exc.to_envelope(), status_code=exc.status)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        {"success": False, "error": "Solicitud inválida", "details": jsonable_encoder(exc.errors())},
        status_code=400,
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse({"success": False, "error": exc.detail}, status_code=exc.status_code)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("[%s %s] Error inesperado", request.method, request.url.path)
    return JSONResponse({"success": False, "error": "Error interno del servidor"}, status_code=500)


def get_siigo() -> SiigoClient:
    if siigo is None:
        raise HTTPException(status_code=503, detail="Cliente Siigo no disponible")
    return siigo


async def bounded(operation):
    """Limita el tiempo total de una operación lógica (auth + reintentos incluidos)."""
    try:
        return await asyncio.wait_for(operation, timeout=settings.operation_timeout)
    except asyncio.TimeoutError:
        raise HTTPException(
            status_code=504,
            detail="La operación con Siigo excedió el tiempo máximo",
        )


def ok(data: Any = None, **extra) -> dict:
    return {"success": True, "data": data, **extra}


# ─── Modelos de respuesta ────────────────────────────────────────

class HealthResponse(BaseModel):
    status: str
    version: str
    db_connected: bool


@app.get("/", response_model=HealthResponse)
async def root():
    """Endpoint de salud del servicio."""
    return HealthResponse(status="healthy", version=APP_VERSION, db_connected=db.is_ready())


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check para Docker."""
    return HealthResponse(
        status="healthy" if siigo else "degraded",
        version=APP_VERSION,
        db_connected=db.is_ready(),
    )


@app.get("/metrics")
async def metrics():
    """Métricas operativas de las llamadas a Siigo."""
    return {"status": "ok", "version": APP_VERSION, **db.get_metrics()}


# ─── Documentos ──────────────────────────────────────────────────

@app.get("/documents")
async def list_documents(
    document_type: str = Query("FC", alias="type"),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100, alias="pageSize"),
    include_dependencies: bool = Query(False, alias="includeDependencies"),
    fields: Optional[str] = None,
    client: SiigoClient = Depends(get_siigo),
):
    """Lista documentos por tipo: FC, ND, DS, RP, FV, NC, RC, CC."""
    result = await bounded(client.list_documents(document_type, page, page_size, include_dependencies))
    documents = result["data"]
    if fields:
        documents = project_fields(documents, [f.strip() for f in fields.split(",") if f.strip()])
    return ok(documents, pagination=result["pagination"], type=result["type"])


@app.get("/documents/{document_id}")
async def get_document(
    document_id: str,
    document_type: str = Query("FC", alias="type"),
    client: SiigoClient = Depends(get_siigo),
):
    return ok(await bounded(client.get_document(document_type, document_id)))


@app.put("/documents/{document_id}")
async def update_document(
    document_id: str,
    document_type: str = Query("FC", alias="type"),
    body: Optional[dict] = Body(None),
    client: SiigoClient = Depends(get_siigo),
):
    return ok(await bounded(client.update_document(document_type, document_id, body or {})))


@app.delete("/documents/{document_id}")
async def delete_document(
    document_id: str,
    document_type: str = Query("FC", alias="type"),
    client: SiigoClient = Depends(get_siigo),
):
    return ok(await bounded(client.delete_document(document_type, document_id)))


# ─── Facturas ────────────────────────────────────────────────────

@app.get("/invoices/fc")
async def list_purchase_invoices(
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100, alias="pageSize"),
    client: SiigoClient = Depends(get_siigo),
):
    result = await bounded(client.list_documents("FC", page, page_size))
    return ok(result["data"], pagination=result["pagination"], type="FC", description="Facturas de Compra")


@app.post("/invoices/fc", status_code=201)
async def create_purchase_invoice(body: dict = Body(...), client: SiigoClient = Depends(get_siigo)):
    data = await bounded(client.create_purchase_invoice(body))
    return ok(data, message="Factura de compra creada exitosamente")


@app.post("/invoices/fv", status_code=201)
async def create_sale_invoice(body: dict = Body(...), client: SiigoClient = Depends(get_siigo)):
    data = await bounded(client.create_sale_invoice(body))
    return ok(data, message="Factura de venta creada exitosamente")


# ─── Recibos de caja ─────────────────────────────────────────────

@app.get("/vouchers")
async def list_vouchers(page: int = Query(0, ge=0), client: SiigoClient = Depends(get_siigo)):
    result = await bounded(client.list_vouchers(page))
    return {"success": True, **result}


@app.post("/vouchers", status_code=201)
async def create_voucher(body: dict = Body(...), client: SiigoClient = Depends(get_siigo)):
    data = await bounded(client.create_voucher(body))
    return ok(data, message="Recibo de caja creado exitosamente")


# ─── Catálogos ───────────────────────────────────────────────────

@app.get("/payment-methods")
async def payment_methods(document_type: str = "FV", client: SiigoClient = Depends(get_siigo)):
    return ok(await bounded(client.list_payment_types(document_type)))


@app.get("/taxes")
async def taxes(client: SiigoClient = Depends(get_siigo)):
    return ok(await bounded(client.list_taxes()))


@app.get("/document-types")
async def document_types(document_type: str = Query("FC", alias="type"), client: SiigoClient = Depends(get_siigo)):
    return ok(await bounded(client.list_document_types(document_type)))


if __name__ == "__main__":
    port = int(os.getenv("PORT", 8000))
    host = os.getenv("HOST", "0.0.0.0")

    logger.info("Iniciando servidor en %s:%s", host, port)
    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        reload=os.getenv("DEBUG", "false").lower() == "true",
    )
