"""Invoice domain types and lifecycle states."""

from __future__ import annotations

import re
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

INVOICE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class InvoiceState(str, Enum):
    CREATED = "created"
    AWAITING_PAYMENT = "awaiting_payment"
    PAID = "paid"
    DELIVERED = "delivered"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (InvoiceState.DELIVERED, InvoiceState.FAILED)

    def can_transition_to(self, new_state: "InvoiceState") -> bool:
        if self.is_terminal:
            return False
        if new_state is InvoiceState.FAILED:
            return True
        return _NEXT_STATE.get(self) is new_state


_NEXT_STATE = {
    InvoiceState.CREATED: InvoiceState.AWAITING_PAYMENT,
    InvoiceState.AWAITING_PAYMENT: InvoiceState.PAID,
    InvoiceState.PAID: InvoiceState.DELIVERED,
}


def new_invoice_id() -> str:
    return f"inv_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def is_valid_invoice_id(value: Any) -> bool:
    return isinstance(value, str) and INVOICE_ID_PATTERN.match(value) is not None


@dataclass(frozen=True)
class LineItem:
    description: str
    quantity: float
    unit_price: float

    @property
    def amount(self) -> float:
        return self.quantity * self.unit_price

    def to_dict(self) -> Dict[str, Any]:
        return {
            "description": self.description,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
        }


@dataclass(frozen=True)
class Party:
    name: str = ""
    contact: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "contact": self.contact}


@dataclass(frozen=True)
class Invoice:
    """An invoice and where it stands in its lifecycle.

    Instances are immutable; the store produces a new instance for every
    transition. ``total`` is always derived from the line items.
    """

    id: str
    recipient_address: str
    line_items: Tuple[LineItem, ...]
    issuer: Party
    bill_to: Party
    currency: str
    created_at: datetime
    state: InvoiceState = InvoiceState.CREATED
    payment_link: Optional[str] = None
    payment_reference: Optional[str] = None
    failure_reason: Optional[str] = None
    paid_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    @property
    def total(self) -> float:
        return sum((item.amount for item in self.line_items), 0.0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "recipient_address": self.recipient_address,
            "line_items": [item.to_dict() for item in self.line_items],
            "issuer": self.issuer.to_dict(),
            "bill_to": self.bill_to.to_dict(),
            "currency": self.currency,
            "state": self.state.value,
            "payment_link": self.payment_link,
            "payment_reference": self.payment_reference,
            "failure_reason": self.failure_reason,
            "created_at": _iso(self.created_at),
            "paid_at": _iso(self.paid_at),
            "delivered_at": _iso(self.delivered_at),
            "failed_at": _iso(self.failed_at),
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class PreCheckoutQuery:
    invoice_id: str
    total_amount: int
    currency: str
    query_id: Optional[str] = None


@dataclass(frozen=True)
class PaymentConfirmation:
    invoice_id: str
    payment_reference: str
    total_amount: Optional[int] = None
    currency: Optional[str] = None
    provider_reference: Optional[str] = None


@dataclass(frozen=True)
class PreCheckoutDecision:
    accepted: bool
    error_message: Optional[str] = None

    @classmethod
    def accept(cls) -> "PreCheckoutDecision":
        return cls(True)

    @classmethod
    def reject(cls, error_message: str) -> "PreCheckoutDecision":
        return cls(False, error_message)


class PaymentOutcome(str, Enum):
    DELIVERED = "delivered"
    DUPLICATE = "duplicate"
    STALE = "stale"
    FAILED = "failed"


@dataclass(frozen=True)
class PayableLink:
    invoice_id: str
    url: str
    amount: int
    currency: str


@dataclass(frozen=True)
class DeliveryReceipt:
    address: str
    message_id: Optional[str] = None
    file_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)
