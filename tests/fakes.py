"""In-process stand-ins for the payment gateway, delivery channel and clock."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from invoice_bot.config import Settings
from invoice_bot.formatting import round_money
from invoice_bot.lifecycle import InvoiceLifecycleManager
from invoice_bot.models import DeliveryReceipt, Invoice, LineItem, Party
from invoice_bot.store import InMemoryInvoiceStore, InvoiceStore

BASE_TIME = datetime(2026, 1, 15, 9, 30, tzinfo=timezone.utc)


class StepClock:
    """Returns BASE_TIME, then one second later on every call."""

    def __init__(self, start: datetime = BASE_TIME) -> None:
        self._now = start
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            now = self._now
            self._now = now + timedelta(seconds=1)
            return now


class FakeGateway:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.links: List[Tuple[str, int, str]] = []
        self.answers: List[Tuple[str, bool, Optional[str]]] = []

    def create_payable_link(self, invoice_id: str, amount: int, currency: str, title: str, description: str) -> str:
        if self.fail:
            raise ConnectionError("gateway down")
        self.links.append((invoice_id, amount, currency))
        return f"https://t.me/$pay-{invoice_id}"

    def answer_pre_checkout(self, query_id: str, ok: bool, error_message: Optional[str] = None) -> None:
        self.answers.append((query_id, ok, error_message))


class FakeChannel:
    def __init__(self, failures: Sequence[Exception] = ()) -> None:
        self.failures = list(failures)
        self.attempts = 0
        self.sent: List[Tuple[str, bytes, Dict[str, Any]]] = []
        self._lock = threading.Lock()

    def deliver(self, address: str, document: bytes, metadata: Dict[str, Any]) -> DeliveryReceipt:
        with self._lock:
            self.attempts += 1
            if self.failures:
                raise self.failures.pop(0)
            self.sent.append((address, document, metadata))
            return DeliveryReceipt(address=address, message_id=str(len(self.sent)))


def fake_renderer(invoice: Invoice, rendered_at: datetime) -> bytes:
    return f"DOC {invoice.id} TOTAL {round_money(invoice.total)} AT {rendered_at.isoformat()}".encode("utf-8")


def design_items() -> List[LineItem]:
    return [LineItem(description="Design", quantity=2, unit_price=50.0)]


def make_manager(
    settings: Optional[Settings] = None,
    store: Optional[InvoiceStore] = None,
    gateway: Optional[FakeGateway] = None,
    channel: Optional[FakeChannel] = None,
    renderer=fake_renderer,
) -> InvoiceLifecycleManager:
    sleeps: List[float] = []
    manager = InvoiceLifecycleManager(
        settings=settings or Settings(delivery_backoff_ms=10, delivery_backoff_max_ms=40),
        store=store or InMemoryInvoiceStore(),
        gateway=gateway or FakeGateway(),
        channel=channel or FakeChannel(),
        renderer=renderer,
        clock=StepClock(),
        sleep=sleeps.append,
    )
    manager.sleeps = sleeps  # type: ignore[attr-defined]
    return manager


def awaiting_invoice(manager: InvoiceLifecycleManager, items: Optional[List[LineItem]] = None) -> Invoice:
    invoice = manager.request_invoice(
        recipient_address="123456789",
        line_items=items or design_items(),
        issuer=Party("ACME Inc.", "billing@acme.test"),
        bill_to=Party("Client LLC", "client@example.test"),
    )
    manager.issue_payment_link(invoice.id)
    return manager.get_invoice(invoice.id)
