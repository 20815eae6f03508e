import tempfile
import threading
import unittest

from invoice_bot.config import Settings
from invoice_bot.errors import (
    DeliveryError,
    GatewayUnavailable,
    InvalidInvoiceData,
    InvalidStateError,
    RenderError,
    UnknownInvoice,
)
from invoice_bot.models import (
    InvoiceState,
    LineItem,
    Party,
    PaymentConfirmation,
    PaymentOutcome,
    PreCheckoutQuery,
)
from invoice_bot.store import JsonFileInvoiceStore

from tests.fakes import FakeChannel, FakeGateway, awaiting_invoice, design_items, make_manager


def confirmation(invoice_id: str, reference: str = "charge-1", amount: int = 100) -> PaymentConfirmation:
    return PaymentConfirmation(invoice_id=invoice_id, payment_reference=reference, total_amount=amount, currency="XTR")


class RequestInvoiceTests(unittest.TestCase):
    def test_creates_invoice_in_created_state(self) -> None:
        manager = make_manager()

        invoice = manager.request_invoice("42", design_items(), Party("ACME"), Party("Client"))

        self.assertIs(invoice.state, InvoiceState.CREATED)
        self.assertEqual(invoice.total, 100.0)
        self.assertEqual(invoice.currency, "XTR")
        self.assertIs(manager.get_invoice(invoice.id), invoice)

    def test_rejects_empty_line_items(self) -> None:
        manager = make_manager()

        with self.assertRaises(InvalidInvoiceData):
            manager.request_invoice("42", [], Party(), Party())

    def test_rejects_negative_or_non_finite_values(self) -> None:
        manager = make_manager()
        bad_items = [
            [LineItem("Work", -1, 10.0)],
            [LineItem("Work", 1, -10.0)],
            [LineItem("Work", float("nan"), 10.0)],
            [LineItem("Work", 1, float("inf"))],
        ]

        for items in bad_items:
            with self.subTest(items=items):
                with self.assertRaises(InvalidInvoiceData):
                    manager.request_invoice("42", items, Party(), Party())

    def test_rejects_missing_recipient(self) -> None:
        manager = make_manager()

        with self.assertRaises(InvalidInvoiceData):
            manager.request_invoice("  ", design_items(), Party(), Party())

    def test_rejects_invoices_over_the_page_limit(self) -> None:
        manager = make_manager(settings=Settings(max_pages=1))
        items = [LineItem(f"Item {i}", 1, 1.0) for i in range(40)]

        with self.assertRaises(InvalidInvoiceData):
            manager.request_invoice("42", items, Party(), Party())

    def test_rejects_totals_that_cannot_be_charged_exactly(self) -> None:
        manager = make_manager()

        with self.assertRaises(InvalidInvoiceData):
            manager.request_invoice("42", [LineItem("Design", 1, 100.5)], Party(), Party())
        self.assertEqual(manager.invoices_in_state(InvoiceState.CREATED), [])

    def test_two_decimal_currencies_keep_cents(self) -> None:
        manager = make_manager()
        items = [LineItem("Pens", 3, 0.1), LineItem("Design", 2, 50.0)]

        invoice = manager.request_invoice("42", items, Party(), Party(), currency="USD")
        link = manager.issue_payment_link(invoice.id)

        self.assertEqual(link.amount, 10030)
        self.assertEqual(link.currency, "USD")


class IssuePaymentLinkTests(unittest.TestCase):
    def test_moves_invoice_to_awaiting_payment(self) -> None:
        gateway = FakeGateway()
        manager = make_manager(gateway=gateway)
        invoice = manager.request_invoice("42", design_items(), Party(), Party())

        link = manager.issue_payment_link(invoice.id)

        self.assertEqual(link.amount, 100)
        self.assertEqual(gateway.links, [(invoice.id, 100, "XTR")])
        stored = manager.get_invoice(invoice.id)
        self.assertIs(stored.state, InvoiceState.AWAITING_PAYMENT)
        self.assertEqual(stored.payment_link, link.url)

    def test_gateway_failure_leaves_invoice_created(self) -> None:
        manager = make_manager(gateway=FakeGateway(fail=True))
        invoice = manager.request_invoice("42", design_items(), Party(), Party())

        with self.assertRaises(GatewayUnavailable):
            manager.issue_payment_link(invoice.id)

        self.assertIs(manager.get_invoice(invoice.id).state, InvoiceState.CREATED)

    def test_retry_after_gateway_failure_succeeds(self) -> None:
        gateway = FakeGateway(fail=True)
        manager = make_manager(gateway=gateway)
        invoice = manager.request_invoice("42", design_items(), Party(), Party())
        with self.assertRaises(GatewayUnavailable):
            manager.issue_payment_link(invoice.id)

        gateway.fail = False
        manager.issue_payment_link(invoice.id)

        self.assertIs(manager.get_invoice(invoice.id).state, InvoiceState.AWAITING_PAYMENT)

    def test_reissuing_returns_existing_link(self) -> None:
        gateway = FakeGateway()
        manager = make_manager(gateway=gateway)
        invoice = awaiting_invoice(manager)

        link = manager.issue_payment_link(invoice.id)

        self.assertEqual(link.url, invoice.payment_link)
        self.assertEqual(len(gateway.links), 1)

    def test_zero_total_cannot_be_paid(self) -> None:
        manager = make_manager()
        invoice = manager.request_invoice("42", [LineItem("Free", 1, 0.0)], Party(), Party())

        with self.assertRaises(InvalidInvoiceData):
            manager.issue_payment_link(invoice.id)

    def test_unknown_invoice(self) -> None:
        with self.assertRaises(UnknownInvoice):
            make_manager().issue_payment_link("inv_missing")

    def test_paid_invoice_cannot_get_new_link(self) -> None:
        manager = make_manager()
        invoice = awaiting_invoice(manager)
        manager.handle_payment_confirmed(confirmation(invoice.id))

        with self.assertRaises(InvalidStateError):
            manager.issue_payment_link(invoice.id)


class PreCheckoutTests(unittest.TestCase):
    def test_accepts_matching_awaiting_invoice(self) -> None:
        manager = make_manager()
        invoice = awaiting_invoice(manager)

        decision = manager.handle_pre_checkout(PreCheckoutQuery(invoice.id, 100, "XTR"))

        self.assertTrue(decision.accepted)

    def test_rejects_amount_or_currency_mismatch(self) -> None:
        manager = make_manager()
        invoice = awaiting_invoice(manager)

        self.assertFalse(manager.handle_pre_checkout(PreCheckoutQuery(invoice.id, 1, "XTR")).accepted)
        self.assertFalse(manager.handle_pre_checkout(PreCheckoutQuery(invoice.id, 100, "USD")).accepted)

    def test_rejects_unknown_invoice(self) -> None:
        decision = make_manager().handle_pre_checkout(PreCheckoutQuery("inv_unknown", 100, "XTR"))

        self.assertFalse(decision.accepted)
        self.assertTrue(decision.error_message)

    def test_rejects_created_invoice(self) -> None:
        manager = make_manager()
        invoice = manager.request_invoice("42", design_items(), Party(), Party())

        decision = manager.handle_pre_checkout(PreCheckoutQuery(invoice.id, 100, "XTR"))

        self.assertFalse(decision.accepted)
        self.assertIs(manager.get_invoice(invoice.id).state, InvoiceState.CREATED)

    def test_always_rejects_paid_or_delivered_invoices(self) -> None:
        manager = make_manager()
        delivered = awaiting_invoice(manager)
        manager.handle_payment_confirmed(confirmation(delivered.id, "charge-delivered"))
        self.assertIs(manager.get_invoice(delivered.id).state, InvoiceState.DELIVERED)

        self.assertFalse(manager.handle_pre_checkout(PreCheckoutQuery(delivered.id, 100, "XTR")).accepted)

        holder = []
        decisions_while_paid = []

        def renderer(invoice, rendered_at):
            query = PreCheckoutQuery(invoice.id, 100, "XTR")
            decisions_while_paid.append(holder[0].handle_pre_checkout(query))
            return b"%PDF-fake"

        paid_manager = make_manager(renderer=renderer)
        holder.append(paid_manager)
        paid = awaiting_invoice(paid_manager)
        paid_manager.handle_payment_confirmed(confirmation(paid.id, "charge-paid"))

        self.assertEqual(len(decisions_while_paid), 1)
        self.assertFalse(decisions_while_paid[0].accepted)

    def test_answers_gateway_when_query_id_present(self) -> None:
        gateway = FakeGateway()
        manager = make_manager(gateway=gateway)
        invoice = awaiting_invoice(manager)

        manager.handle_pre_checkout(PreCheckoutQuery(invoice.id, 100, "XTR", query_id="q-1"))
        manager.handle_pre_checkout(PreCheckoutQuery(invoice.id, 5, "XTR", query_id="q-2"))

        self.assertEqual(gateway.answers[0], ("q-1", True, None))
        self.assertEqual(gateway.answers[1][:2], ("q-2", False))

    def test_never_mutates_state(self) -> None:
        manager = make_manager()
        invoice = awaiting_invoice(manager)

        manager.handle_pre_checkout(PreCheckoutQuery(invoice.id, 100, "XTR"))
        manager.handle_pre_checkout(PreCheckoutQuery(invoice.id, 3, "XTR"))

        self.assertEqual(manager.get_invoice(invoice.id), invoice)


class PaymentConfirmedTests(unittest.TestCase):
    def test_renders_delivers_and_marks_delivered(self) -> None:
        channel = FakeChannel()
        manager = make_manager(channel=channel)
        invoice = awaiting_invoice(manager)

        outcome = manager.handle_payment_confirmed(confirmation(invoice.id))

        self.assertIs(outcome, PaymentOutcome.DELIVERED)
        self.assertEqual(len(channel.sent), 1)
        address, document, metadata = channel.sent[0]
        self.assertEqual(address, "123456789")
        self.assertIn(b"TOTAL 100.00", document)
        self.assertEqual(metadata["filename"], f"invoice-{invoice.id}.pdf")

        stored = manager.get_invoice(invoice.id)
        self.assertIs(stored.state, InvoiceState.DELIVERED)
        self.assertEqual(stored.payment_reference, "charge-1")
        self.assertLessEqual(stored.created_at, stored.paid_at)
        self.assertLessEqual(stored.paid_at, stored.delivered_at)

    def test_renders_with_payment_time(self) -> None:
        channel = FakeChannel()
        manager = make_manager(channel=channel)
        invoice = awaiting_invoice(manager)

        manager.handle_payment_confirmed(confirmation(invoice.id))

        paid_at = manager.get_invoice(invoice.id).paid_at
        self.assertIn(paid_at.isoformat().encode("utf-8"), channel.sent[0][1])

    def test_same_reference_twice_delivers_once(self) -> None:
        channel = FakeChannel()
        manager = make_manager(channel=channel)
        invoice = awaiting_invoice(manager)

        first = manager.handle_payment_confirmed(confirmation(invoice.id))
        second = manager.handle_payment_confirmed(confirmation(invoice.id))

        self.assertIs(first, PaymentOutcome.DELIVERED)
        self.assertIs(second, PaymentOutcome.DUPLICATE)
        self.assertEqual(len(channel.sent), 1)

    def test_concurrent_different_references_deliver_once(self) -> None:
        channel = FakeChannel()
        manager = make_manager(channel=channel)
        invoice = awaiting_invoice(manager)
        barrier = threading.Barrier(8)
        outcomes = []
        outcomes_lock = threading.Lock()

        def pay(reference: str) -> None:
            barrier.wait()
            outcome = manager.handle_payment_confirmed(confirmation(invoice.id, reference))
            with outcomes_lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=pay, args=(f"charge-{i}",)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(outcomes.count(PaymentOutcome.DELIVERED), 1)
        self.assertEqual(outcomes.count(PaymentOutcome.STALE), 7)
        self.assertEqual(len(channel.sent), 1)

    def test_concurrent_same_reference_delivers_once(self) -> None:
        channel = FakeChannel()
        manager = make_manager(channel=channel)
        invoice = awaiting_invoice(manager)
        barrier = threading.Barrier(6)
        outcomes = []
        outcomes_lock = threading.Lock()

        def pay() -> None:
            barrier.wait()
            outcome = manager.handle_payment_confirmed(confirmation(invoice.id))
            with outcomes_lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=pay) for _ in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(outcomes.count(PaymentOutcome.DELIVERED), 1)
        self.assertEqual(len(channel.sent), 1)
        self.assertTrue(all(o in (PaymentOutcome.DELIVERED, PaymentOutcome.DUPLICATE, PaymentOutcome.STALE) for o in outcomes))

    def test_created_invoice_is_not_delivered(self) -> None:
        channel = FakeChannel()
        manager = make_manager(channel=channel)
        invoice = manager.request_invoice("42", design_items(), Party(), Party())

        outcome = manager.handle_payment_confirmed(confirmation(invoice.id))

        self.assertIs(outcome, PaymentOutcome.STALE)
        self.assertEqual(channel.sent, [])
        self.assertIs(manager.get_invoice(invoice.id).state, InvoiceState.CREATED)

    def test_unknown_invoice_is_rejected_without_creating_one(self) -> None:
        manager = make_manager()

        with self.assertRaises(UnknownInvoice):
            manager.handle_payment_confirmed(confirmation("inv_123_deadbeef"))
        for state in InvoiceState:
            self.assertEqual(manager.invoices_in_state(state), [])

    def test_render_failure_marks_invoice_failed(self) -> None:
        def broken_renderer(invoice, rendered_at):
            raise RenderError(RenderError.RENDER_FAILED, "font missing")

        channel = FakeChannel()
        manager = make_manager(channel=channel, renderer=broken_renderer)
        invoice = awaiting_invoice(manager)

        with self.assertLogs("invoice_bot.lifecycle", level="ERROR") as logs:
            outcome = manager.handle_payment_confirmed(confirmation(invoice.id))

        self.assertIs(outcome, PaymentOutcome.FAILED)
        self.assertEqual(channel.attempts, 0)
        stored = manager.get_invoice(invoice.id)
        self.assertIs(stored.state, InvoiceState.FAILED)
        self.assertIn("render_failed", stored.failure_reason)
        self.assertEqual(manager.failed_invoices(), [stored])
        self.assertIn("manual reconciliation", "\n".join(logs.output))

    def test_transient_delivery_failures_are_retried_with_backoff(self) -> None:
        transient = DeliveryError(DeliveryError.TRANSIENT_FAILURE, "502")
        channel = FakeChannel(failures=[transient, transient])
        manager = make_manager(channel=channel)
        invoice = awaiting_invoice(manager)

        outcome = manager.handle_payment_confirmed(confirmation(invoice.id))

        self.assertIs(outcome, PaymentOutcome.DELIVERED)
        self.assertEqual(channel.attempts, 3)
        self.assertEqual(manager.sleeps, [0.01, 0.02])

    def test_exhausted_retries_mark_invoice_failed(self) -> None:
        failures = [DeliveryError(DeliveryError.TRANSIENT_FAILURE, "timeout") for _ in range(3)]
        channel = FakeChannel(failures=failures)
        manager = make_manager(channel=channel)
        invoice = awaiting_invoice(manager)

        outcome = manager.handle_payment_confirmed(confirmation(invoice.id))

        self.assertIs(outcome, PaymentOutcome.FAILED)
        self.assertEqual(channel.attempts, 3)
        self.assertIs(manager.get_invoice(invoice.id).state, InvoiceState.FAILED)

    def test_retry_after_is_capped(self) -> None:
        throttled = DeliveryError(DeliveryError.TRANSIENT_FAILURE, "429", retry_after=30)
        manager = make_manager(channel=FakeChannel(failures=[throttled]))
        invoice = awaiting_invoice(manager)

        manager.handle_payment_confirmed(confirmation(invoice.id))

        self.assertEqual(manager.sleeps, [0.04])

    def test_fatal_delivery_error_is_not_retried(self) -> None:
        channel = FakeChannel(failures=[DeliveryError(DeliveryError.INVALID_ADDRESS, "chat not found")])
        manager = make_manager(channel=channel)
        invoice = awaiting_invoice(manager)

        outcome = manager.handle_payment_confirmed(confirmation(invoice.id))

        self.assertIs(outcome, PaymentOutcome.FAILED)
        self.assertEqual(channel.attempts, 1)
        self.assertEqual(manager.sleeps, [])

    def test_failed_invoice_is_never_delivered_by_later_webhooks(self) -> None:
        channel = FakeChannel(failures=[DeliveryError(DeliveryError.PAYLOAD_TOO_LARGE, "too big")])
        manager = make_manager(channel=channel)
        invoice = awaiting_invoice(manager)
        manager.handle_payment_confirmed(confirmation(invoice.id))

        again = manager.handle_payment_confirmed(confirmation(invoice.id))
        other = manager.handle_payment_confirmed(confirmation(invoice.id, "charge-2"))

        self.assertIs(again, PaymentOutcome.DUPLICATE)
        self.assertIs(other, PaymentOutcome.STALE)
        self.assertEqual(channel.sent, [])
        self.assertIs(manager.get_invoice(invoice.id).state, InvoiceState.FAILED)

    def test_amount_mismatch_is_logged_but_delivered(self) -> None:
        manager = make_manager()
        invoice = awaiting_invoice(manager)

        with self.assertLogs("invoice_bot.lifecycle", level="WARNING"):
            outcome = manager.handle_payment_confirmed(confirmation(invoice.id, amount=99))

        self.assertIs(outcome, PaymentOutcome.DELIVERED)


class ProcessKilled(BaseException):
    pass


class InterruptedDeliveryTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)

    def test_paid_invoices_left_by_a_dead_process_are_failed_on_start_up(self) -> None:
        def dying_renderer(invoice, rendered_at):
            raise ProcessKilled()

        first = make_manager(store=JsonFileInvoiceStore(self._tmp.name), renderer=dying_renderer)
        invoice = awaiting_invoice(first)
        with self.assertRaises(ProcessKilled):
            first.handle_payment_confirmed(confirmation(invoice.id))

        channel = FakeChannel()
        restarted = make_manager(store=JsonFileInvoiceStore(self._tmp.name), channel=channel)
        self.assertIs(restarted.get_invoice(invoice.id).state, InvoiceState.PAID)

        with self.assertLogs("invoice_bot.lifecycle", level="ERROR") as logs:
            recovered = restarted.fail_interrupted()

        self.assertEqual([i.id for i in recovered], [invoice.id])
        self.assertIn("manual reconciliation", "\n".join(logs.output))
        stored = restarted.get_invoice(invoice.id)
        self.assertIs(stored.state, InvoiceState.FAILED)
        self.assertEqual(stored.failure_reason, "interrupted")
        self.assertEqual(restarted.failed_invoices(), [stored])

        replay = restarted.handle_payment_confirmed(confirmation(invoice.id))

        self.assertIs(replay, PaymentOutcome.DUPLICATE)
        self.assertEqual(channel.attempts, 0)

    def test_other_states_are_left_alone(self) -> None:
        manager = make_manager(store=JsonFileInvoiceStore(self._tmp.name))
        awaiting = awaiting_invoice(manager)
        delivered = awaiting_invoice(manager)
        manager.handle_payment_confirmed(confirmation(delivered.id))

        self.assertEqual(manager.fail_interrupted(), [])
        self.assertIs(manager.get_invoice(awaiting.id).state, InvoiceState.AWAITING_PAYMENT)
        self.assertIs(manager.get_invoice(delivered.id).state, InvoiceState.DELIVERED)


if __name__ == "__main__":
    unittest.main()
