"""Parsing and validation of request bodies into invoice types."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .errors import InvalidInvoiceData
from .formatting import finite_number
from .models import LineItem, Party, PaymentConfirmation, PreCheckoutQuery
from .pagination import estimate_page_count, max_items_for_pages

ValidationError = Tuple[int, Dict[str, Any]]

MAX_DESCRIPTION_LENGTH = 1000
MAX_PARTY_FIELD_LENGTH = 500


def decode_json_object(body: bytes) -> Tuple[Optional[Dict[str, Any]], Optional[ValidationError]]:
    try:
        payload = json.loads(body.decode("utf-8"))
    except UnicodeDecodeError:
        return None, (
            400,
            {"error": "invalid_encoding", "detail": "Body must be UTF-8 encoded JSON."},
        )
    except json.JSONDecodeError as exc:
        return None, (
            400,
            {
                "error": "invalid_json",
                "detail": f"{exc.msg} (line {exc.lineno}, column {exc.colno})",
            },
        )

    if not isinstance(payload, dict):
        return None, (
            400,
            {"error": "invalid_payload", "detail": "JSON root must be an object."},
        )
    return payload, None


def check_item_count(item_count: int, max_pages: int) -> Optional[ValidationError]:
    estimated_pages = estimate_page_count(item_count)
    if estimated_pages > max_pages:
        return (
            413,
            {
                "error": "invoice_too_large",
                "detail": f"Invoice would render {estimated_pages} pages; maximum is {max_pages}.",
                "max_items": max_items_for_pages(max_pages),
            },
        )
    return None


def validate_line_items(items: Sequence[LineItem]) -> None:
    """Raise InvalidInvoiceData unless every item is billable."""
    if not items:
        raise InvalidInvoiceData("At least one line item is required.")
    for index, item in enumerate(items):
        if not isinstance(item.description, str) or not item.description.strip():
            raise InvalidInvoiceData(f"line_items[{index}].description must be a non-empty string.")
        quantity = finite_number(item.quantity)
        if quantity is None or quantity <= 0:
            raise InvalidInvoiceData(f"line_items[{index}].quantity must be a positive number.")
        unit_price = finite_number(item.unit_price)
        if unit_price is None or unit_price < 0:
            raise InvalidInvoiceData(f"line_items[{index}].unit_price must be a non-negative number.")


def _string_field(source: Dict[str, Any], key: str, where: str, limit: int) -> str:
    value = source.get(key, "")
    if value is None:
        return ""
    if not isinstance(value, str):
        raise InvalidInvoiceData(f"{where}.{key} must be a string.")
    if len(value) > limit:
        raise InvalidInvoiceData(f"{where}.{key} exceeds {limit} characters.")
    return value


def parse_party(raw: Any, where: str) -> Party:
    if raw is None:
        return Party()
    if not isinstance(raw, dict):
        raise InvalidInvoiceData(f"'{where}' must be an object.")
    # "email" is what the bot's web form sends
    contact_key = "contact" if "contact" in raw else "email"
    return Party(
        name=_string_field(raw, "name", where, MAX_PARTY_FIELD_LENGTH),
        contact=_string_field(raw, contact_key, where, MAX_PARTY_FIELD_LENGTH),
    )


def parse_line_items(raw: Any) -> List[LineItem]:
    if not isinstance(raw, list):
        raise InvalidInvoiceData("'line_items' must be an array.")
    items: List[LineItem] = []
    for index, entry in enumerate(raw):
        if not isinstance(entry, dict):
            raise InvalidInvoiceData(f"line_items[{index}] must be an object.")
        description = _string_field(entry, "description", f"line_items[{index}]", MAX_DESCRIPTION_LENGTH)
        quantity = finite_number(entry.get("quantity"))
        unit_price = finite_number(entry.get("unit_price", entry.get("price")))
        if quantity is None:
            raise InvalidInvoiceData(f"line_items[{index}].quantity must be a finite number.")
        if unit_price is None:
            raise InvalidInvoiceData(f"line_items[{index}].unit_price must be a finite number.")
        items.append(LineItem(description=description.strip(), quantity=quantity, unit_price=unit_price))
    validate_line_items(items)
    return items


def parse_invoice_request(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Turn a ``POST /invoices`` body into keyword arguments for request_invoice."""
    recipient = payload.get("recipient_address", payload.get("chat_id"))
    if isinstance(recipient, int) and not isinstance(recipient, bool):
        recipient = str(recipient)
    if not isinstance(recipient, str) or not recipient.strip():
        raise InvalidInvoiceData("'recipient_address' must be a non-empty string or integer chat id.")

    currency = payload.get("currency")
    if currency is not None and (not isinstance(currency, str) or not currency.strip().isalpha()):
        raise InvalidInvoiceData("'currency' must be an alphabetic currency code.")

    return {
        "recipient_address": recipient.strip(),
        "line_items": parse_line_items(payload.get("line_items", payload.get("items"))),
        "issuer": parse_party(payload.get("issuer"), "issuer"),
        "bill_to": parse_party(payload.get("bill_to"), "bill_to"),
        "currency": currency.strip().upper() if currency else None,
    }


def _required_string(payload: Dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise InvalidInvoiceData(f"'{key}' must be a non-empty string.")
    return value.strip()


def _optional_amount(payload: Dict[str, Any], key: str) -> Optional[int]:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInvoiceData(f"'{key}' must be an integer amount in the smallest currency unit.")
    return value


def parse_pre_checkout(payload: Dict[str, Any]) -> PreCheckoutQuery:
    total_amount = _optional_amount(payload, "total_amount")
    if total_amount is None:
        raise InvalidInvoiceData("'total_amount' is required.")
    query_id = payload.get("query_id")
    return PreCheckoutQuery(
        invoice_id=_required_string(payload, "invoice_id"),
        total_amount=total_amount,
        currency=_required_string(payload, "currency").upper(),
        query_id=str(query_id) if query_id is not None else None,
    )


def parse_payment_confirmation(payload: Dict[str, Any]) -> PaymentConfirmation:
    currency = payload.get("currency")
    return PaymentConfirmation(
        invoice_id=_required_string(payload, "invoice_id"),
        payment_reference=_required_string(payload, "payment_reference"),
        total_amount=_optional_amount(payload, "total_amount"),
        currency=currency.upper() if isinstance(currency, str) and currency else None,
    )
