"""Error taxonomy for invoice issuance, payment handling and delivery."""

from __future__ import annotations

from typing import Optional


class InvoiceBotError(Exception):
    """Base class for all errors raised by the service."""

    code = "internal_error"


class InvalidInvoiceData(InvoiceBotError):
    code = "invalid_invoice_data"


class UnknownInvoice(InvoiceBotError):
    code = "unknown_invoice"


class InvalidStateError(InvoiceBotError):
    code = "invalid_state"


class GatewayUnavailable(InvoiceBotError):
    """The payment gateway could not mint a payable link; safe to retry."""

    code = "gateway_unavailable"


class RenderError(InvoiceBotError):
    INVALID_INPUT = "invalid_input"
    RENDER_FAILED = "render_failed"
    RENDER_BUSY = "render_busy"
    RENDER_TIMEOUT = "render_timeout"

    code = "render_error"

    def __init__(self, kind: str, detail: str = "") -> None:
        super().__init__(kind, detail)
        self.kind = kind
        self.detail = detail

    def __str__(self) -> str:
        return f"{self.kind}: {self.detail}" if self.detail else self.kind


class DeliveryError(InvoiceBotError):
    INVALID_ADDRESS = "invalid_address"
    TRANSIENT_FAILURE = "transient_failure"
    PAYLOAD_TOO_LARGE = "payload_too_large"

    code = "delivery_error"

    def __init__(self, kind: str, detail: str = "", retry_after: Optional[float] = None) -> None:
        super().__init__(kind, detail, retry_after)
        self.kind = kind
        self.detail = detail
        self.retry_after = retry_after

    def __str__(self) -> str:
        return f"{self.kind}: {self.detail}" if self.detail else self.kind

    @property
    def retryable(self) -> bool:
        return self.kind == self.TRANSIENT_FAILURE


class StoreError(InvoiceBotError):
    code = "store_error"


class DuplicateId(StoreError):
    code = "duplicate_id"


class InvoiceNotFound(StoreError):
    code = "not_found"


class IllegalTransition(StoreError):
    code = "illegal_transition"


class ConflictError(StoreError):
    """A concurrent or repeated event already handled this invoice."""

    code = "conflict"


class StaleState(ConflictError):
    code = "stale_state"

    def __init__(self, invoice_id: str, expected: str, actual: str) -> None:
        super().__init__(f"invoice {invoice_id} is {actual}, expected {expected}")
        self.invoice_id = invoice_id
        self.expected = expected
        self.actual = actual


class DuplicatePaymentReference(ConflictError):
    code = "duplicate_payment_reference"
