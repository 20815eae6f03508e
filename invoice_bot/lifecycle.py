"""Invoice lifecycle: issue, gate on payment, render and deliver exactly once.

States move only forward along ``created -> awaiting_payment -> paid ->
delivered``; ``failed`` is reachable from any non-terminal state. Every move
goes through the store's compare-and-transition, which is the only
synchronization between concurrent webhook deliveries. Winning the
``awaiting_payment -> paid`` transition is what entitles a caller to render
and deliver, so each invoice is delivered at most once.
"""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from .config import Settings
from .errors import (
    ConflictError,
    DeliveryError,
    GatewayUnavailable,
    InvalidInvoiceData,
    InvalidStateError,
    InvoiceNotFound,
    RenderError,
    StaleState,
    UnknownInvoice,
)
from .formatting import currency_symbol, fits_minor_units, fmt_money, round_money, to_minor_units
from .models import (
    DeliveryReceipt,
    Invoice,
    InvoiceState,
    LineItem,
    PayableLink,
    Party,
    PaymentConfirmation,
    PaymentOutcome,
    PreCheckoutDecision,
    PreCheckoutQuery,
    is_valid_invoice_id,
    new_invoice_id,
)
from .pagination import estimate_page_count
from .store import InvoiceStore
from .validation import validate_line_items

logger = logging.getLogger(__name__)

Renderer = Callable[[Invoice, datetime], bytes]
Clock = Callable[[], datetime]


class PaymentGateway(Protocol):
    def create_payable_link(
        self,
        invoice_id: str,
        amount: int,
        currency: str,
        title: str,
        description: str,
    ) -> str:
        ...

    def answer_pre_checkout(self, query_id: str, ok: bool, error_message: Optional[str] = None) -> None:
        ...


class DeliveryChannel(Protocol):
    def deliver(self, address: str, document: bytes, metadata: Dict[str, Any]) -> DeliveryReceipt:
        ...


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class InvoiceLifecycleManager:
    def __init__(
        self,
        settings: Settings,
        store: InvoiceStore,
        gateway: PaymentGateway,
        channel: DeliveryChannel,
        renderer: Renderer,
        clock: Clock = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.store = store
        self.gateway = gateway
        self.channel = channel
        self.renderer = renderer
        self.clock = clock
        self.sleep = sleep

    # Issuance

    def request_invoice(
        self,
        recipient_address: str,
        line_items: Sequence[LineItem],
        issuer: Party,
        bill_to: Party,
        currency: Optional[str] = None,
    ) -> Invoice:
        if not isinstance(recipient_address, str) or not recipient_address.strip():
            raise InvalidInvoiceData("A recipient address is required.")
        validate_line_items(line_items)
        pages = estimate_page_count(len(line_items))
        if pages > self.settings.max_pages:
            raise InvalidInvoiceData(
                f"Invoice would render {pages} pages; maximum is {self.settings.max_pages}."
            )

        currency = (currency or self.settings.currency).upper()
        total = sum((item.amount for item in line_items), 0.0)
        if not fits_minor_units(total, currency):
            raise InvalidInvoiceData(
                f"Total {round_money(total)} cannot be charged exactly in {currency}."
            )

        invoice = Invoice(
            id=new_invoice_id(),
            recipient_address=recipient_address.strip(),
            line_items=tuple(line_items),
            issuer=issuer,
            bill_to=bill_to,
            currency=currency,
            created_at=self.clock(),
        )
        self.store.create(invoice)
        logger.info(
            "Invoice %s created for %s: %d items, total %s",
            invoice.id,
            invoice.recipient_address,
            len(invoice.line_items),
            self._money(invoice),
        )
        return invoice

    def issue_payment_link(self, invoice_id: str) -> PayableLink:
        invoice = self.get_invoice(invoice_id)
        if invoice.state is InvoiceState.AWAITING_PAYMENT and invoice.payment_link:
            return self._payable_link(invoice)
        if invoice.state is not InvoiceState.CREATED:
            raise InvalidStateError(f"Invoice {invoice_id} is {invoice.state.value}; no payment link can be issued.")

        amount = self._amount_due(invoice)
        if amount <= 0:
            raise InvalidInvoiceData(f"Invoice {invoice_id} has nothing to pay.")

        try:
            url = self.gateway.create_payable_link(
                invoice.id,
                amount,
                invoice.currency,
                self.settings.invoice_title,
                self.settings.invoice_description,
            )
        except Exception as exc:
            logger.warning("Payment link for invoice %s failed: %s", invoice_id, exc)
            raise GatewayUnavailable(f"Payment gateway unavailable: {exc}") from exc

        try:
            updated = self.store.compare_and_transition(
                invoice_id,
                InvoiceState.CREATED,
                InvoiceState.AWAITING_PAYMENT,
                lambda current: replace(current, payment_link=url),
            )
        except StaleState:
            # a concurrent request issued a link first
            current = self.get_invoice(invoice_id)
            if current.state is InvoiceState.AWAITING_PAYMENT and current.payment_link:
                return self._payable_link(current)
            raise InvalidStateError(f"Invoice {invoice_id} is {current.state.value}; no payment link can be issued.")

        logger.info("Invoice %s awaiting payment of %d %s", invoice_id, amount, invoice.currency)
        return self._payable_link(updated)

    # Payment events

    def handle_pre_checkout(self, query: PreCheckoutQuery) -> PreCheckoutDecision:
        decision = self._decide_pre_checkout(query)
        if decision.accepted:
            logger.info("Pre-checkout accepted for invoice %s", query.invoice_id)
        else:
            logger.warning("Pre-checkout rejected for invoice %s: %s", query.invoice_id, decision.error_message)

        if query.query_id is not None:
            try:
                self.gateway.answer_pre_checkout(query.query_id, decision.accepted, decision.error_message)
            except Exception:
                logger.exception("Could not answer pre-checkout query %s", query.query_id)
        return decision

    def _decide_pre_checkout(self, query: PreCheckoutQuery) -> PreCheckoutDecision:
        try:
            invoice = self.get_invoice(query.invoice_id)
        except UnknownInvoice:
            return PreCheckoutDecision.reject("This invoice does not exist.")
        if invoice.state is not InvoiceState.AWAITING_PAYMENT:
            return PreCheckoutDecision.reject("This invoice can no longer be paid.")
        if query.currency.upper() != invoice.currency.upper():
            return PreCheckoutDecision.reject("Payment currency does not match the invoice.")
        if query.total_amount != self._amount_due(invoice):
            return PreCheckoutDecision.reject("Payment amount does not match the invoice total.")
        return PreCheckoutDecision.accept()

    def handle_payment_confirmed(self, confirmation: PaymentConfirmation) -> PaymentOutcome:
        reference = confirmation.payment_reference
        try:
            existing = self.store.find_by_payment_reference(reference)
        except InvoiceNotFound:
            pass
        else:
            logger.info(
                "Duplicate payment event %s for invoice %s (%s); ignoring",
                reference,
                existing.id,
                existing.state.value,
            )
            return PaymentOutcome.DUPLICATE

        invoice = self.get_invoice(confirmation.invoice_id)
        self._check_paid_amount(invoice, confirmation)

        paid_at = max(self.clock(), invoice.created_at)
        try:
            paid = self.store.compare_and_transition(
                invoice.id,
                InvoiceState.AWAITING_PAYMENT,
                InvoiceState.PAID,
                lambda current: replace(current, payment_reference=reference, paid_at=paid_at),
            )
        except ConflictError as exc:
            logger.info("Payment event %s for invoice %s already handled: %s", reference, invoice.id, exc)
            return PaymentOutcome.STALE

        logger.info("Invoice %s paid (reference %s)", paid.id, reference)

        try:
            document = self.renderer(paid, paid.paid_at or paid_at)
            receipt = self._deliver(paid, document)
        except (RenderError, DeliveryError) as exc:
            self._mark_failed(paid, f"{exc.code}: {exc}")
            return PaymentOutcome.FAILED
        except Exception as exc:
            logger.exception("Unexpected error while rendering or delivering invoice %s", paid.id)
            self._mark_failed(paid, f"internal_error: {exc}")
            return PaymentOutcome.FAILED

        delivered_at = max(self.clock(), paid.paid_at or paid_at)
        self.store.compare_and_transition(
            paid.id,
            InvoiceState.PAID,
            InvoiceState.DELIVERED,
            lambda current: replace(current, delivered_at=delivered_at),
        )
        logger.info("Invoice %s delivered to %s (message %s)", paid.id, receipt.address, receipt.message_id)
        return PaymentOutcome.DELIVERED

    # Operator views

    def get_invoice(self, invoice_id: str) -> Invoice:
        if not is_valid_invoice_id(invoice_id):
            raise UnknownInvoice(f"Unknown invoice {invoice_id!r}.")
        try:
            return self.store.get(invoice_id)
        except InvoiceNotFound as exc:
            raise UnknownInvoice(f"Unknown invoice {invoice_id!r}.") from exc

    def invoices_in_state(self, state: InvoiceState) -> List[Invoice]:
        return self.store.list_by_state(state)

    def failed_invoices(self) -> List[Invoice]:
        return self.store.list_by_state(InvoiceState.FAILED)

    def fail_interrupted(self) -> List[Invoice]:
        """Move invoices left in ``paid`` by an earlier process to ``failed``.

        Must run at start-up, before any webhook is served.
        """
        failed: List[Invoice] = []
        for invoice in self.store.list_by_state(InvoiceState.PAID):
            try:
                self._mark_failed(invoice, "interrupted")
            except ConflictError:
                continue
            failed.append(self.store.get(invoice.id))
        return failed

    # Internals

    def _amount_due(self, invoice: Invoice) -> int:
        return to_minor_units(invoice.total, invoice.currency)

    def _money(self, invoice: Invoice) -> str:
        return fmt_money(invoice.total, currency_symbol(invoice.currency))

    def _payable_link(self, invoice: Invoice) -> PayableLink:
        return PayableLink(
            invoice_id=invoice.id,
            url=invoice.payment_link or "",
            amount=self._amount_due(invoice),
            currency=invoice.currency,
        )

    def _check_paid_amount(self, invoice: Invoice, confirmation: PaymentConfirmation) -> None:
        if confirmation.total_amount is None:
            return
        expected = self._amount_due(invoice)
        currency = confirmation.currency or invoice.currency
        if confirmation.total_amount != expected or currency.upper() != invoice.currency.upper():
            logger.warning(
                "Invoice %s paid %s %s but %d %s was due; delivering anyway",
                invoice.id,
                confirmation.total_amount,
                currency,
                expected,
                invoice.currency,
            )

    def _deliver(self, invoice: Invoice, document: bytes) -> DeliveryReceipt:
        metadata = {
            "invoice_id": invoice.id,
            "filename": f"invoice-{invoice.id}.pdf",
            "caption": f"Invoice {invoice.id}, total {self._money(invoice)}. Thank you for your payment!",
        }
        attempt = 0
        while True:
            attempt += 1
            try:
                return self.channel.deliver(invoice.recipient_address, document, metadata)
            except DeliveryError as exc:
                if not exc.retryable or attempt >= self.settings.delivery_max_attempts:
                    raise
                delay = max(self.settings.delivery_backoff(attempt), exc.retry_after or 0.0)
                delay = min(delay, self.settings.delivery_backoff_max_ms / 1000.0)
                logger.warning(
                    "Delivery of invoice %s failed (attempt %d/%d): %s; retrying in %.2fs",
                    invoice.id,
                    attempt,
                    self.settings.delivery_max_attempts,
                    exc,
                    delay,
                )
                self.sleep(delay)

    def _mark_failed(self, invoice: Invoice, reason: str) -> None:
        failed_at = max(self.clock(), invoice.paid_at or invoice.created_at)
        self.store.compare_and_transition(
            invoice.id,
            InvoiceState.PAID,
            InvoiceState.FAILED,
            lambda current: replace(current, failure_reason=reason, failed_at=failed_at),
        )
        logger.error(
            "Invoice %s was paid (reference %s) but not delivered: %s. "
            "Needs manual reconciliation.",
            invoice.id,
            invoice.payment_reference,
            reason,
        )
