"""
Operaciones de documentos contra Siigo Nube.

SiigoClient agrupa todas las llamadas que usa la UI de facturación. Cada
método es una llamada lógica a través de `execute_with_recovery`, así que la
política de 401/429 vive en un solo lugar.

Dependencias para crear documentos:
- Factura Compra → document-types (type=FC) + payment-types + proveedor existente
- Factura Venta  → document-types (type=FV) + payment-types + cliente existente
- Recibo Caja    → document-types (type=RC) + payment-types + factura de venta (due)
"""
import asyncio
import logging
import math
from datetime import date
from typing import Any, Optional

from config import Settings
from errors import UpstreamHttpError, ValidationError, error_field, error_list
from siigo_auth import TokenManager
from siigo_http import Sleep, UpstreamRequest, execute_with_recovery
from siigo_payloads import (
    DocumentKind,
    build_payload,
    caller_number,
    merge_purchase_update,
    next_sequence_number,
    reconcile_payments,
)

logger = logging.getLogger(__name__)

# Tipo de documento → recurso para consultar/editar/eliminar por id.
RESOURCE_PATHS = {
    "FC": "purchases",
    "ND": "debit-notes",
    "DS": "support-documents",
    "RP": "payment-receipts",
    "FV": "invoices",
}

# Tipo de documento → (recurso de listado, filtro document_type).
LIST_ENDPOINTS = {
    "FC": ("purchases", "FC"),      # Facturas de compra
    "ND": ("purchases", "ND"),      # Notas débito
    "DS": ("purchases", "DS"),      # Documentos soporte
    "RP": ("payment-receipts", None),
    "FV": ("invoices", None),
    "NC": ("credit-notes", None),
    "RC": ("cash-receipts", None),
    "CC": ("accounting-entries", None),
}

NUMBER_ASSIGNMENT_ATTEMPTS = 5
NUMBERING_LIST_PAGE_SIZE = 50
VOUCHERS_PAGE_SIZE = 100


def _results(data: Any) -> list:
    """Siigo responde listas planas o {"results": [...], "pagination": {...}}."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict) and isinstance(data.get("results"), list):
        return data["results"]
    return []


def _normalize_type(document_type: Optional[str], allowed: dict, default: str = "FC") -> str:
    normalized = (document_type or default).strip().upper()
    if normalized not in allowed:
        raise ValidationError(
            f"Tipo de documento no soportado: {document_type}",
            details={"permitidos": sorted(allowed)},
        )
    return normalized


def _mentions_number(error: Any) -> bool:
    params = error_field(error, "params")
    if isinstance(params, list):
        return "number" in params
    return "number" in str(error_field(error, "message") or "").lower()


def is_missing_number_error(body: Any) -> bool:
    return any(
        error_field(e, "code") == "parameter_required" and _mentions_number(e)
        for e in error_list(body)
    )


def is_number_exists_error(body: Any) -> bool:
    return any(
        error_field(e, "code") == "already_exists" and _mentions_number(e)
        for e in error_list(body)
    )


def receipt_total(document: dict) -> float:
    """Total de un recibo de pago: suma del valor absoluto de todos sus ítems."""
    total = 0.0
    for item in document.get("items") or []:
        try:
            total += abs(float(item.get("value") or 0))
        except (TypeError, ValueError):
            continue
    return total


class SiigoClient:
    """Cliente de documentos de Siigo para el BFF. Una instancia por proceso."""

    def __init__(self, settings: Settings, token_manager: TokenManager, transport,
                 sleep: Sleep = asyncio.sleep):
        self.settings = settings
        self.token_manager = token_manager
        self.transport = transport
        self._sleep = sleep

    async def _call(self, method: str, path: str, params: Optional[dict] = None, body: Any = None) -> Any:
        request = UpstreamRequest(method=method, url=self.settings.url(path), params=params, body=body)
        result = await execute_with_recovery(self.token_manager, self.transport, request, sleep=self._sleep)
        return result.data

    def _list_path(self, document_type: str) -> tuple[str, Optional[str]]:
        path, doc_filter = LIST_ENDPOINTS[document_type]
        if path == "purchases":
            path = self.settings.purchases_path
        return path, doc_filter

    # ─── Consultas ───────────────────────────────────────────────

    async def list_documents(self, document_type: Optional[str] = "FC", page: int = 1,
                             page_size: int = 50, include_dependencies: bool = False) -> dict:
        """Lista documentos de un tipo con paginación de Siigo."""
        document_type = _normalize_type(document_type, LIST_ENDPOINTS)
        path, doc_filter = self._list_path(document_type)

        params = {}
        if doc_filter and "?" not in path:
            params["document_type"] = doc_filter
        params["page"] = str(page)
        params["page_size"] = str(page_size)
        if include_dependencies:
            params["include_dependencies"] = "true"

        data = await self._call("GET", path, params=params)
        documents = _results(data)
        if document_type == "RP":
            documents = [
                {**doc, "total": receipt_total(doc)} if isinstance(doc, dict) else doc
                for doc in documents
            ]
        pagination = data.get("pagination") if isinstance(data, dict) else None
        return {"data": documents, "pagination": pagination, "type": document_type}

    async def get_document(self, document_type: Optional[str], document_id: str) -> Any:
        document_type = _normalize_type(document_type, RESOURCE_PATHS)
        path = f"{RESOURCE_PATHS[document_type]}/{document_id}"
        return await self._call("GET", path, params={"include_dependencies": "true"})

    async def list_document_types(self, document_type: str = "FC") -> list:
        data = await self._call("GET", "document-types", params={"type": document_type})
        return _results(data)

    async def list_payment_types(self, document_type: str = "FV") -> Any:
        return await self._call("GET", "payment-types", params={"document_type": document_type})

    async def list_taxes(self) -> Any:
        return await self._call("GET", "taxes")

    # ─── Edición y eliminación ───────────────────────────────────

    async def update_document(self, document_type: Optional[str], document_id: str, body: Any) -> Any:
        """
        Edita un documento. En compras (FC) el cuerpo se completa con el documento
        actual y los pagos se recalculan contra el total sin impuestos.
        """
        document_type = _normalize_type(document_type, RESOURCE_PATHS)
        path = f"{RESOURCE_PATHS[document_type]}/{document_id}"
        request_body = body if isinstance(body, dict) else {}

        if document_type == "FC":
            try:
                current = await self._call("GET", path, params={"include_dependencies": "true"})
            except UpstreamHttpError as exc:
                raise UpstreamHttpError(
                    "No se pudo obtener el documento actual para completar la actualización",
                    status=exc.status,
                    details=exc.details,
                ) from exc
            request_body = merge_purchase_update(
                request_body,
                current,
                default_payment_id=self.settings.default_payment_id,
                today=date.today().isoformat(),
            )

        return await self._call("PUT", path, body=request_body)

    async def delete_document(self, document_type: Optional[str], document_id: str) -> Any:
        document_type = _normalize_type(document_type, RESOURCE_PATHS)
        return await self._call("DELETE", f"{RESOURCE_PATHS[document_type]}/{document_id}")

    # ─── Factura de compra ───────────────────────────────────────

    async def _resolve_document_type(self, payload: dict) -> Optional[dict]:
        """
        Busca la configuración del tipo de documento FC del payload. Si no existe o
        está inactivo, usa el primer tipo FC activo.
        """
        types = await self.list_document_types("FC")
        wanted = payload["document"]["id"]
        current = next((d for d in types if _int_or_none(d.get("id")) == wanted), None)
        if current is None or current.get("active") is False:
            fallback = next((d for d in types if d.get("active") is True), None)
            if fallback is None:
                logger.warning("No hay tipos de documento FC activos en Siigo")
                return current
            logger.warning(
                "document.id %s inactivo o no encontrado; usando %s - %s",
                wanted, fallback.get("id"), fallback.get("name"),
            )
            payload["document"]["id"] = int(fallback["id"])
            return fallback
        return current

    async def next_purchase_number(self, document_id: int, reported_consecutive: Any = None) -> int:
        """Siguiente consecutivo para un tipo FC con numeración manual."""
        path, doc_filter = self._list_path("FC")
        data = await self._call("GET", path, params={
            "document_type": doc_filter,
            "page": "1",
            "page_size": str(NUMBERING_LIST_PAGE_SIZE),
        })
        return next_sequence_number(_results(data), document_id, reported_consecutive)

    async def _post_purchase(self, payload: dict) -> Any:
        return await self._call("POST", self.settings.purchases_create_path, body=payload)

    async def _assign_number_and_post(self, payload: dict, first_number: int) -> Any:
        number = first_number
        last_error: Optional[UpstreamHttpError] = None
        for _ in range(NUMBER_ASSIGNMENT_ATTEMPTS):
            logger.info("Creando factura de compra con number=%s", number)
            try:
                return await self._post_purchase({**payload, "number": number})
            except UpstreamHttpError as exc:
                if not is_number_exists_error(exc.details):
                    raise
                last_error = exc
                number += 1
        raise UpstreamHttpError(
            "No fue posible asignar un número automáticamente tras varios intentos",
            status=400,
            details=last_error.details if last_error else None,
        )

    async def create_purchase_invoice(self, body: Any) -> Any:
        """
        Crea una factura de compra.

        - Sin `number` explícito y con numeración manual, calcula el consecutivo antes de enviar.
        - Salvo `include_payments: false`, concilia los pagos (aun vacíos) contra el total sin impuestos.
        - Si Siigo rechaza por número faltante o repetido, reintenta con el siguiente (máx. 5).
        """
        payload = build_payload(
            DocumentKind.PURCHASE, body,
            default_document_id=self.settings.default_purchase_document_id,
        )
        if "payments" in payload:
            payload = reconcile_payments(payload, self.settings.default_payment_id)
        explicit_number = caller_number(body)

        if explicit_number is not None:
            payload["number"] = explicit_number
        else:
            try:
                doc_type = await self._resolve_document_type(payload)
                if doc_type is not None and not doc_type.get("automatic_number"):
                    payload["number"] = await self.next_purchase_number(
                        payload["document"]["id"], doc_type.get("consecutive")
                    )
            except UpstreamHttpError as exc:
                logger.warning("No se pudo preparar el consecutivo; se intenta envío directo: %s", exc.message)

        try:
            data = await self._post_purchase(payload)
        except UpstreamHttpError as exc:
            if exc.status != 400 or explicit_number is not None:
                raise
            if is_number_exists_error(exc.details) and payload.get("number"):
                data = await self._assign_number_and_post(payload, payload["number"] + 1)
            elif is_missing_number_error(exc.details):
                first = await self.next_purchase_number(payload["document"]["id"])
                data = await self._assign_number_and_post(payload, first)
            else:
                raise

        if not data:
            raise UpstreamHttpError("La respuesta de Siigo está vacía o es inválida", status=500, details=data)
        return data

    # ─── Factura de venta ────────────────────────────────────────

    async def create_sale_invoice(self, body: Any) -> Any:
        payload = build_payload(DocumentKind.SALE, body)
        return await self._call("POST", "invoices", body=payload)

    # ─── Recibos de caja ─────────────────────────────────────────

    async def list_vouchers(self, page: int = 0) -> dict:
        """Recibos de caja (RC). Siigo pagina desde 0 en este recurso."""
        data = await self._call("GET", self.settings.vouchers_path, params={
            "numberPage": str(page),
            "pageSize": str(VOUCHERS_PAGE_SIZE),
            "document_type": "RC",
        })
        pagination = data.get("pagination") if isinstance(data, dict) else None
        total_results = (pagination or {}).get("totalResults") or 0
        return {
            "vouchers": _results(data),
            "pagination": {
                "currentPage": page,
                "pageSize": VOUCHERS_PAGE_SIZE,
                "totalResults": total_results,
                "totalPages": math.ceil(total_results / VOUCHERS_PAGE_SIZE),
            },
        }

    async def create_voucher(self, body: Any) -> Any:
        payload = build_payload(DocumentKind.CASH_RECEIPT, body)
        return await self._call("POST", self.settings.vouchers_path, body=payload)


def _int_or_none(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
