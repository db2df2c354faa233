"""
Construcción de payloads para Siigo (funciones puras, sin red).

Un único constructor por tipo de documento:
- PURCHASE      → facturas de compra (purchases, usa `supplier`)
- SALE          → facturas de venta (invoices, usa `customer`)
- CASH_RECEIPT  → recibos de caja (vouchers, usa `customer`)

También incluye los cálculos previos al envío: total de compra sin impuestos,
conciliación de pagos, siguiente consecutivo en numeración manual y la mezcla
del documento actual en una edición de compra.
"""
from datetime import date as _date
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Iterable, Literal, Optional

from pydantic import BaseModel

from errors import ValidationError

# Si el consecutivo reportado por Siigo se aleja más que esto del calculado, se ignora.
CONSECUTIVE_SANITY_BOUND = 10000

ITEM_TYPES = ("Product", "FixedAsset", "Account")
CASH_RECEIPT_TYPES = ("DebtPayment", "AdvancePayment", "Detailed")


class DocumentKind(str, Enum):
    PURCHASE = "purchase"
    SALE = "sale"
    CASH_RECEIPT = "cash_receipt"


# ─── Modelos de request ──────────────────────────────────────────

class DocumentRef(BaseModel):
    id: int


class TaxRef(BaseModel):
    id: int


class PartyRef(BaseModel):
    identification: str
    branch_office: Optional[int] = None


class ProviderInvoice(BaseModel):
    prefix: Optional[str] = None
    number: Optional[str] = None


class Currency(BaseModel):
    code: str
    exchange_rate: Optional[float] = None


class Payment(BaseModel):
    id: int
    value: float
    due_date: Optional[str] = None


class PurchaseItem(BaseModel):
    type: Literal["Product", "FixedAsset", "Account"] = "Product"
    code: str
    description: Optional[str] = None
    quantity: float = 0
    price: float = 0
    discount: Optional[float] = None
    taxes: Optional[list[TaxRef]] = None
    supplier: Optional[int] = None
    warehouse: Optional[int] = None


class PurchasePayload(BaseModel):
    document: DocumentRef
    date: str
    supplier: PartyRef
    number: Optional[int] = None
    cost_center: Optional[int] = None
    provider_invoice: Optional[ProviderInvoice] = None
    currency: Optional[Currency] = None
    observations: Optional[str] = None
    discount_type: Literal["Value", "Percentage"] = "Value"
    supplier_by_item: bool = False
    tax_included: bool = False
    items: list[PurchaseItem]
    payments: Optional[list[Payment]] = None


class SaleItem(BaseModel):
    code: str
    description: Optional[str] = None
    quantity: float = 0
    price: float = 0
    discount: Optional[float] = None
    taxes: Optional[list[TaxRef]] = None


class Stamp(BaseModel):
    send: bool = False


class SalePayload(BaseModel):
    document: DocumentRef
    date: str
    customer: PartyRef
    seller: Optional[int] = None
    number: Optional[int] = None
    cost_center: Optional[int] = None
    currency: Optional[Currency] = None
    stamp: Optional[Stamp] = None
    observations: Optional[str] = None
    items: list[SaleItem]
    payments: list[Payment]


class Due(BaseModel):
    prefix: str
    consecutive: int
    quote: int = 0


class Account(BaseModel):
    code: str
    movement: Optional[Literal["Debit", "Credit"]] = None


class CashReceiptItem(BaseModel):
    due: Optional[Due] = None
    account: Optional[Account] = None
    description: Optional[str] = None
    value: float


class CashReceiptPayment(BaseModel):
    id: int
    value: float


class CashReceiptPayload(BaseModel):
    document: DocumentRef
    date: str
    type: Literal["DebtPayment", "AdvancePayment", "Detailed"]
    customer: PartyRef
    items: Optional[list[CashReceiptItem]] = None
    advance_value: Optional[float] = None
    payment: CashReceiptPayment
    observations: Optional[str] = None


# ─── Helpers de coerción ─────────────────────────────────────────

def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _as_number(value: Any) -> Optional[float]:
    """Número o None (para valores vacíos o no numéricos)."""
    if _is_blank(value) or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number:  # NaN
        return None
    return number


def _as_int(value: Any) -> Optional[int]:
    number = _as_number(value)
    return int(number) if number is not None else None


def _positive_int(value: Any) -> Optional[int]:
    number = _as_int(value)
    return number if number is not None and number > 0 else None


def _dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _list(value: Any) -> list:
    return value if isinstance(value, list) else []


class _Checker:
    """Acumula errores de forma para reportarlos todos juntos."""

    def __init__(self):
        self.missing: list[str] = []
        self.invalid: list[str] = []

    def number(self, value: Any, field: str, default: float = 0) -> float:
        if _is_blank(value):
            return default
        number = _as_number(value)
        if number is None:
            self.invalid.append(f"{field} inválido")
            return default
        return number

    def raise_if_any(self, what: str):
        if self.missing:
            raise ValidationError(
                f"Faltan campos obligatorios para crear {what}",
                details={"faltantes": self.missing, "invalidos": self.invalid} if self.invalid
                else {"faltantes": self.missing},
            )
        if self.invalid:
            raise ValidationError(f"Payload inválido para crear {what}", details={"invalidos": self.invalid})


def round_money(value: float) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def normalize_item_type(raw: Any) -> str:
    """Product/FixedAsset/Account se conservan; Service pasa a Account; lo demás es Product."""
    value = str(raw or "").strip()
    if value in ITEM_TYPES:
        return value
    return "Account" if value == "Service" else "Product"


def _taxes(raw: Any, field: str, check: _Checker) -> Optional[list[TaxRef]]:
    taxes = []
    for idx, tax in enumerate(_list(raw)):
        tax_id = _as_int(_dict(tax).get("id"))
        if tax_id is None:
            check.invalid.append(f"{field}.taxes[{idx}].id inválido")
            continue
        taxes.append(TaxRef(id=tax_id))
    return taxes or None


def _party(raw: Any, field: str, check: _Checker) -> Optional[PartyRef]:
    party = _dict(raw)
    identification = party.get("identification")
    if _is_blank(identification):
        check.missing.append(f"{field}.identification")
        return None
    branch = _as_int(party.get("branch_office"))
    if branch is None:
        branch = 0
    return PartyRef(identification=str(identification), branch_office=branch)


def _document(body: dict, check: _Checker, default_id: Optional[int] = None) -> Optional[DocumentRef]:
    doc_id = _positive_int(_dict(body.get("document")).get("id")) or default_id
    if doc_id is None:
        check.missing.append("document.id")
        return None
    return DocumentRef(id=doc_id)


def _date_field(body: dict, check: _Checker) -> str:
    value = body.get("date")
    if _is_blank(value):
        check.missing.append("date")
        return ""
    return str(value)


def _currency(raw: Any) -> Optional[Currency]:
    currency = _dict(raw)
    if not currency.get("code"):
        return None
    return Currency(code=str(currency["code"]), exchange_rate=_as_number(currency.get("exchange_rate")))


def _payments(raw: Any, check: _Checker) -> list[Payment]:
    payments = []
    for idx, payment in enumerate(_list(raw)):
        payment = _dict(payment)
        payment_id = _as_int(payment.get("id"))
        if payment_id is None:
            check.invalid.append(f"payments[{idx}].id inválido")
            continue
        payments.append(Payment(
            id=payment_id,
            value=check.number(payment.get("value"), f"payments[{idx}].value"),
            due_date=str(payment["due_date"]) if payment.get("due_date") else None,
        ))
    return payments


def caller_number(body: dict) -> Optional[int]:
    """Consecutivo explícito enviado por el cliente (number, document.number o consecutive)."""
    for candidate in (body.get("number"), _dict(body.get("document")).get("number"), body.get("consecutive")):
        if _is_blank(candidate):
            continue
        number = _as_int(candidate)
        if number is not None:
            return number
    return None


# ─── Constructores por tipo ──────────────────────────────────────

def _build_purchase(body: dict, default_document_id: Optional[int]) -> dict:
    check = _Checker()
    document = _document(body, check, default_document_id)
    date = _date_field(body, check)
    supplier = _party(body.get("supplier"), "supplier", check)
    supplier_by_item = body.get("supplier_by_item") if isinstance(body.get("supplier_by_item"), bool) else False

    items = []
    raw_items = _list(body.get("items"))
    if not raw_items:
        check.missing.append("items[]")
    for idx, raw in enumerate(raw_items):
        item = _dict(raw)
        if _is_blank(item.get("code")):
            check.missing.append(f"items[{idx}].code")
            continue
        discount = item.get("discount")
        items.append(PurchaseItem(
            type=normalize_item_type(item.get("type") or "Product"),
            code=str(item["code"]),
            description=str(item["description"]) if item.get("description") else None,
            quantity=check.number(item.get("quantity"), f"items[{idx}].quantity"),
            price=check.number(item.get("price"), f"items[{idx}].price"),
            discount=None if discount is None else check.number(discount, f"items[{idx}].discount"),
            taxes=_taxes(item.get("taxes"), f"items[{idx}]", check),
            supplier=_as_int(item.get("supplier")) if supplier_by_item else None,
            warehouse=_as_int(item.get("warehouse")),
        ))

    include_payments = body.get("include_payments") is not False
    # Siigo exige `payments` en FC; una lista vacía se concilia luego contra el total.
    payments = _payments(body.get("payments"), check) if include_payments else None
    check.raise_if_any("factura de compra")

    provider_invoice = None
    raw_provider = _dict(body.get("provider_invoice"))
    if raw_provider.get("number") is not None or raw_provider.get("prefix") is not None:
        provider_invoice = ProviderInvoice(
            prefix=str(raw_provider["prefix"]) if raw_provider.get("prefix") is not None else None,
            number=str(raw_provider["number"]) if raw_provider.get("number") is not None else None,
        )

    payload = PurchasePayload(
        document=document,
        date=date,
        supplier=supplier,
        cost_center=_as_int(body.get("cost_center")),
        provider_invoice=provider_invoice,
        currency=_currency(body.get("currency")),
        observations=str(body["observations"]) if body.get("observations") else None,
        discount_type="Percentage" if body.get("discount_type") == "Percentage" else "Value",
        supplier_by_item=supplier_by_item,
        tax_included=body.get("tax_included") if isinstance(body.get("tax_included"), bool) else False,
        items=items,
        payments=payments,
    )
    return payload.model_dump(exclude_none=True)


def _build_sale(body: dict) -> dict:
    check = _Checker()
    document = _document(body, check)
    date = _date_field(body, check)
    customer = _party(body.get("customer"), "customer", check)

    items = []
    raw_items = _list(body.get("items"))
    if not raw_items:
        check.missing.append("items[]")
    for idx, raw in enumerate(raw_items):
        item = _dict(raw)
        if _is_blank(item.get("code")):
            check.missing.append(f"items[{idx}].code")
            continue
        discount = item.get("discount")
        items.append(SaleItem(
            code=str(item["code"]),
            description=str(item["description"]) if item.get("description") else None,
            quantity=check.number(item.get("quantity"), f"items[{idx}].quantity"),
            price=check.number(item.get("price"), f"items[{idx}].price"),
            discount=None if discount is None else check.number(discount, f"items[{idx}].discount"),
            taxes=_taxes(item.get("taxes"), f"items[{idx}]", check),
        ))

    payments = _payments(body.get("payments"), check)
    if not payments and not check.invalid:
        check.missing.append("payments[]")
    check.raise_if_any("factura de venta")

    stamp = body.get("stamp")
    payload = SalePayload(
        document=document,
        date=date,
        customer=customer,
        seller=_as_int(body.get("seller")),
        number=caller_number(body),
        cost_center=_as_int(body.get("cost_center")),
        currency=_currency(body.get("currency")),
        stamp=Stamp(send=bool(_dict(stamp).get("send"))) if isinstance(stamp, dict) else None,
        observations=str(body["observations"]) if body.get("observations") else None,
        items=items,
        payments=payments,
    )
    return payload.model_dump(exclude_none=True)


def _build_cash_receipt(body: dict) -> dict:
    check = _Checker()
    document = _document(body, check)
    date = _date_field(body, check)
    customer = _party(body.get("customer"), "customer", check)

    receipt_type = body.get("type") or "DebtPayment"
    if receipt_type not in CASH_RECEIPT_TYPES:
        raise ValidationError(
            f"Tipo de recibo de caja no soportado: {receipt_type}",
            details={"permitidos": list(CASH_RECEIPT_TYPES)},
        )

    items = []
    for idx, raw in enumerate(_list(body.get("items"))):
        item = _dict(raw)
        value = check.number(item.get("value"), f"items[{idx}].value")
        due = account = None
        if receipt_type == "DebtPayment":
            raw_due = _dict(item.get("due"))
            consecutive = _as_int(raw_due.get("consecutive"))
            if _is_blank(raw_due.get("prefix")) or consecutive is None:
                check.missing.append(f"items[{idx}].due.prefix/consecutive")
                continue
            due = Due(prefix=str(raw_due["prefix"]), consecutive=consecutive,
                      quote=_as_int(raw_due.get("quote")) or 0)
        elif receipt_type == "Detailed":
            raw_account = _dict(item.get("account"))
            if _is_blank(raw_account.get("code")):
                check.missing.append(f"items[{idx}].account.code")
                continue
            movement = raw_account.get("movement")
            if movement not in (None, "Debit", "Credit"):
                check.invalid.append(f"items[{idx}].account.movement inválido (usar Debit/Credit)")
                continue
            account = Account(code=str(raw_account["code"]), movement=movement)
        items.append(CashReceiptItem(
            due=due,
            account=account,
            description=str(item["description"]) if item.get("description") else None,
            value=value,
        ))

    advance_value = None
    if receipt_type == "AdvancePayment":
        if _is_blank(body.get("advance_value")):
            check.missing.append("advance_value")
        else:
            advance_value = check.number(body.get("advance_value"), "advance_value")
    elif not _list(body.get("items")):
        check.missing.append("items[]")

    raw_payment = _dict(body.get("payment"))
    payment_id = _as_int(raw_payment.get("id"))
    if payment_id is None:
        check.missing.append("payment.id")
    payment_value = check.number(raw_payment.get("value"), "payment.value")
    check.raise_if_any("recibo de caja")

    payload = CashReceiptPayload(
        document=document,
        date=date,
        type=receipt_type,
        customer=customer,
        items=items or None,
        advance_value=advance_value,
        payment=CashReceiptPayment(id=payment_id, value=payment_value),
        observations=str(body["observations"]) if body.get("observations") else None,
    )
    return payload.model_dump(exclude_none=True)


def build_payload(kind: DocumentKind, body: Any, default_document_id: Optional[int] = None) -> dict:
    """Valida el cuerpo del cliente y arma el JSON exacto que espera Siigo."""
    if not isinstance(body, dict):
        raise ValidationError("El cuerpo de la solicitud debe ser un objeto JSON")
    if kind is DocumentKind.PURCHASE:
        return _build_purchase(body, default_document_id)
    if kind is DocumentKind.SALE:
        return _build_sale(body)
    if kind is DocumentKind.CASH_RECEIPT:
        return _build_cash_receipt(body)
    raise ValueError(f"Tipo de documento desconocido: {kind}")


# ─── Cálculos previos al envío ───────────────────────────────────

def purchase_total(items: Iterable[dict], discount_type: str = "Value") -> float:
    """
    Total de la compra sin impuestos, que es contra lo que Siigo valida los pagos.
    El descuento por ítem es un valor fijo o un porcentaje según `discount_type`.
    """
    percentage = str(discount_type or "Value").lower() == "percentage"
    total = 0.0
    for item in items:
        base = (_as_number(item.get("quantity")) or 0) * (_as_number(item.get("price")) or 0)
        discount = _as_number(item.get("discount")) or 0
        if percentage:
            discount = base * (discount / 100)
        total += max(0.0, base - discount)
    return round_money(total)


def reconcile_payments(payload: dict, default_payment_id: Optional[int] = None) -> dict:
    """
    Si la suma de pagos no coincide con el total sin impuestos, reemplaza los pagos
    por una sola entrada por el total, fechada a la fecha del documento.
    """
    total = purchase_total(payload.get("items") or [], payload.get("discount_type", "Value"))
    payments = payload.get("payments") or []
    current = round_money(sum(_as_number(p.get("value")) or 0 for p in payments))
    if current == total:
        return payload

    payment_id = _positive_int(payments[0].get("id")) if payments else None
    payment_id = payment_id or default_payment_id
    if payment_id is None:
        raise ValidationError(
            "No se pudo determinar la forma de pago para la factura de compra",
            details={"faltantes": ["payments[0].id"]},
        )
    reconciled = dict(payload)
    reconciled["payments"] = [{"id": payment_id, "value": total, "due_date": payload.get("date")}]
    return reconciled


def next_sequence_number(
    documents: Iterable[dict],
    document_id: Optional[int] = None,
    reported_consecutive: Any = None,
) -> int:
    """
    Siguiente consecutivo para numeración manual: máximo observado + 1, o el
    consecutivo reportado por el tipo de documento si es mayor y no está a más de
    CONSECUTIVE_SANITY_BOUND del calculado.
    """
    max_number = 0
    for doc in documents:
        if not isinstance(doc, dict):
            continue
        doc_type_id = _as_int(_dict(doc.get("document")).get("id"))
        if document_id is not None and doc_type_id != document_id:
            continue
        number = _as_int(doc.get("number"))
        if number is not None and number > max_number:
            max_number = number

    computed = max_number + 1
    reported = _as_int(reported_consecutive)
    if reported is not None and 0 < reported < computed + CONSECUTIVE_SANITY_BOUND:
        return max(reported, computed)
    return computed


def merge_purchase_update(
    incoming: Any,
    current: Any,
    default_payment_id: Optional[int] = None,
    today: Optional[str] = None,
) -> dict:
    """
    Completa el cuerpo de una edición de factura de compra con el documento actual.
    Siigo exige en el PUT los mismos campos obligatorios que en la creación.
    """
    body = _dict(incoming)
    current = _dict(current)
    check = _Checker()

    current_items = _list(current.get("items"))
    items = []
    for idx, raw in enumerate(_list(body.get("items"))):
        item = _dict(raw)
        mapped = {
            "type": normalize_item_type(item.get("type")),
            "code": str(item.get("code") or ""),
            "quantity": check.number(item.get("quantity"), f"items[{idx}].quantity"),
            "price": check.number(item.get("price"), f"items[{idx}].price"),
        }
        if item.get("description"):
            mapped["description"] = str(item["description"])
        if item.get("discount") is not None:
            mapped["discount"] = check.number(item["discount"], f"items[{idx}].discount")
        taxes = _taxes(item.get("taxes"), f"items[{idx}]", check)
        if not taxes:
            # Hereda impuestos del ítem actual con el mismo código.
            code = mapped["code"].strip()
            match = next(
                (ci for ci in current_items if str(_dict(ci).get("code") or "").strip() == code),
                None,
            )
            if match is not None:
                taxes = _taxes(match.get("taxes"), f"items[{idx}]", check)
        if taxes:
            mapped["taxes"] = [tax.model_dump() for tax in taxes]
        items.append(mapped)

    raw_discount_type = str(body.get("discount_type") or current.get("discount_type") or "Value")
    discount_type = "Percentage" if raw_discount_type.lower() == "percentage" else "Value"
    total = purchase_total(items, discount_type)

    incoming_payments = _list(body.get("payments"))
    first_incoming = _dict(incoming_payments[0]) if incoming_payments else {}
    first_current = _dict(_list(current.get("payments"))[0]) if _list(current.get("payments")) else {}
    payment_id = (
        _positive_int(first_incoming.get("id"))
        or _positive_int(first_current.get("id"))
        or default_payment_id
    )
    effective_date = str(body.get("date") or current.get("date") or today or _date.today().isoformat())

    document_id = _positive_int(_dict(body.get("document")).get("id")) or _positive_int(
        _dict(current.get("document")).get("id")
    )
    if document_id is None:
        check.missing.append("document.id")
    if payment_id is None:
        check.missing.append("payments[0].id")

    supplier = body.get("supplier")
    if not isinstance(supplier, dict) or _is_blank(supplier.get("identification")):
        current_supplier = _dict(current.get("supplier"))
        identification = current_supplier.get("identification") or current_supplier.get("identificacion")
        supplier = None
        if not _is_blank(identification):
            supplier = {"identification": str(identification)}
            branch = _positive_int(current_supplier.get("branch_office"))
            if branch is not None:
                supplier["branch_office"] = branch
    if supplier is None:
        check.missing.append("supplier.identification")
    check.raise_if_any("la edición de factura de compra")

    merged = {
        "document": {"id": document_id},
        "date": effective_date,
        "supplier": supplier,
    }
    cost_center = _positive_int(body.get("cost_center") if body.get("cost_center") is not None
                                else current.get("cost_center"))
    if cost_center is not None:
        merged["cost_center"] = cost_center

    provider_invoice = body.get("provider_invoice") or current.get("provider_invoice")
    if isinstance(provider_invoice, dict):
        merged["provider_invoice"] = {
            "prefix": str(provider_invoice.get("prefix") or ""),
            "number": str(provider_invoice.get("number") or ""),
        }

    currency = body.get("currency")
    if not currency:
        current_currency = _dict(current.get("currency"))
        if current_currency.get("code") and current_currency["code"] != "COP":
            currency = {
                "code": current_currency["code"],
                "exchange_rate": _as_number(current_currency.get("exchange_rate")) or 1,
            }
    if currency:
        merged["currency"] = currency

    observations = body.get("observations")
    merged["observations"] = observations if observations is not None else (current.get("observations") or "")
    merged["discount_type"] = discount_type
    supplier_by_item = body.get("supplier_by_item")
    merged["supplier_by_item"] = bool(
        supplier_by_item if supplier_by_item is not None else current.get("supplier_by_item", False)
    )
    tax_included = body.get("tax_included")
    merged["tax_included"] = bool(tax_included if tax_included is not None else current.get("tax_included", False))
    merged["items"] = items
    merged["payments"] = [{
        "id": payment_id,
        "value": total,
        "due_date": first_incoming.get("due_date") or effective_date,
    }]
    return merged


# ─── Proyección de campos ────────────────────────────────────────

def _extract_nested_value(record: dict, dotted_path: str):
    value = record
    for part in dotted_path.split("."):
        if isinstance(value, dict) and part in value:
            value = value[part]
        else:
            return None, False
    return value, True


def project_fields(data: Any, fields: Optional[list[str]]) -> Any:
    """
    Reduce cada documento a los campos pedidos (nivel superior o rutas con punto,
    ej: `metadata.created`). Acepta una lista de documentos o un solo documento.
    """
    if not fields:
        return data

    def filter_record(record):
        if not isinstance(record, dict):
            return record
        filtered = {}
        for field in fields:
            if field in record:
                filtered[field] = record[field]
                continue
            value, found = _extract_nested_value(record, field) if "." in field else (None, False)
            if found:
                filtered[field] = value
        return filtered

    if isinstance(data, list):
        return [filter_record(r) for r in data]
    return filter_record(data)
