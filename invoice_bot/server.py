"""HTTP surface: invoice creation, payment webhooks and operator views."""

from __future__ import annotations

import json
import logging
import re
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import parse_qs, urlsplit

from .config import ConfigurationError, Settings, require_bot_token
from .errors import (
    GatewayUnavailable,
    InvalidInvoiceData,
    InvalidStateError,
    InvoiceBotError,
    UnknownInvoice,
)
from .lifecycle import InvoiceLifecycleManager, Renderer
from .models import Invoice, InvoiceState, PayableLink, PaymentConfirmation, PreCheckoutQuery
from .net import is_client_disconnect, secrets_match
from .render_pool import RenderPool
from .store import InMemoryInvoiceStore, InvoiceStore, JsonFileInvoiceStore
from .telegram import TelegramBotClient, TelegramDeliveryChannel, TelegramPaymentGateway, parse_update
from .validation import (
    check_item_count,
    decode_json_object,
    parse_invoice_request,
    parse_payment_confirmation,
    parse_pre_checkout,
)

logger = logging.getLogger(__name__)

INVOICE_PATH = re.compile(r"^/invoices/(?P<invoice_id>[^/]+)$")
PAYMENT_LINK_PATH = re.compile(r"^/invoices/(?P<invoice_id>[^/]+)/payment-link$")

WEBHOOK_SECRET_HEADER = "X-Webhook-Secret"
TELEGRAM_SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"

ERROR_STATUS = {
    InvalidInvoiceData: 400,
    UnknownInvoice: 404,
    InvalidStateError: 409,
    GatewayUnavailable: 503,
}


class DependencyError(RuntimeError):
    """Raised when a required runtime dependency is missing."""


def load_render_invoice() -> Renderer:
    try:
        from .rendering import render_invoice
    except ModuleNotFoundError as exc:
        if exc.name == "fpdf":
            raise DependencyError(
                "Missing dependency 'fpdf2'. Install the project with 'pip install .'."
            ) from exc
        raise
    return render_invoice


def invoice_view(invoice: Invoice) -> Dict[str, Any]:
    view = invoice.to_dict()
    view["total"] = invoice.total
    return view


def link_view(link: PayableLink, invoice: Invoice) -> Dict[str, Any]:
    return {
        "invoice_id": link.invoice_id,
        "state": invoice.state.value,
        "total": invoice.total,
        "currency": link.currency,
        "amount": link.amount,
        "payment_link": link.url,
    }


class InvoiceHandler(BaseHTTPRequestHandler):
    server: "InvoiceHTTPServer"

    def _write_response(self, status: int, content_type: str, body: bytes) -> bool:
        try:
            self.send_response(status)
            self.send_header("Content-Type", content_type)
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)
            return True
        except Exception as exc:
            if is_client_disconnect(exc):
                return False
            raise

    def _send_json(self, status: int, payload: Dict[str, Any]) -> bool:
        body = json.dumps(payload).encode("utf-8")
        return self._write_response(status, "application/json", body)

    def _send_error(self, exc: InvoiceBotError) -> None:
        status = 500
        for error_type, error_status in ERROR_STATUS.items():
            if isinstance(exc, error_type):
                status = error_status
                break
        self._send_json(status, {"error": exc.code, "detail": str(exc)})

    def _read_body(self) -> Optional[bytes]:
        header = self.headers.get("Content-Length")
        if header is None:
            self._send_json(
                411,
                {
                    "error": "missing_content_length",
                    "detail": "Content-Length header is required.",
                },
            )
            return None

        try:
            content_length = int(header)
        except ValueError:
            self._send_json(
                400,
                {
                    "error": "invalid_content_length",
                    "detail": "Content-Length must be an integer.",
                },
            )
            return None

        if content_length <= 0:
            self._send_json(400, {"error": "empty_body", "detail": "Request body cannot be empty."})
            return None

        max_body_bytes = self.server.settings.max_body_bytes
        if content_length > max_body_bytes:
            self._send_json(
                413,
                {
                    "error": "payload_too_large",
                    "detail": f"Body exceeds {max_body_bytes} bytes.",
                },
            )
            return None

        try:
            return self.rfile.read(content_length)
        except Exception as exc:
            if is_client_disconnect(exc):
                return None
            raise

    def _read_json(self) -> Optional[Dict[str, Any]]:
        body = self._read_body()
        if body is None:
            return None
        payload, error = decode_json_object(body)
        if error is not None:
            status, error_body = error
            self._send_json(status, error_body)
            return None
        return payload

    def _authorized(self, header: str) -> bool:
        if secrets_match(self.server.settings.webhook_secret, self.headers.get(header)):
            return True
        logger.warning("Rejected %s from %s: bad webhook secret", self.path, self.client_address[0])
        self._send_json(401, {"error": "unauthorized", "detail": "Invalid webhook secret."})
        return False

    def _route_post(self, path: str) -> Optional[Callable[[], None]]:
        if path == "/invoices":
            return self._create_invoice
        if path == "/payment-events/pre-checkout":
            return self._pre_checkout
        if path == "/payment-events/confirmed":
            return self._payment_confirmed
        if path == "/webhook/telegram":
            return self._telegram_update
        match = PAYMENT_LINK_PATH.match(path)
        if match:
            return lambda: self._issue_payment_link(match.group("invoice_id"))
        return None

    def do_POST(self) -> None:
        handler = self._route_post(urlsplit(self.path).path)
        if handler is None:
            self._send_json(404, {"error": "not_found", "detail": "Unsupported endpoint."})
            return
        self._dispatch(handler)

    def do_GET(self) -> None:
        parts = urlsplit(self.path)
        if parts.path in ("/", "/health", "/healthz"):
            self._send_json(
                200,
                {
                    "status": "ok",
                    "store": self.server.manager.store.name,
                    "uptime_seconds": round(time.monotonic() - self.server.started_at, 3),
                },
            )
            return
        if parts.path == "/invoices":
            self._dispatch(lambda: self._list_invoices(parts.query))
            return
        match = INVOICE_PATH.match(parts.path)
        if match:
            self._dispatch(lambda: self._show_invoice(match.group("invoice_id")))
            return
        self._send_json(404, {"error": "not_found", "detail": "Unsupported endpoint."})

    def _dispatch(self, handler: Callable[[], None]) -> None:
        try:
            handler()
        except InvoiceBotError as exc:
            if not isinstance(exc, tuple(ERROR_STATUS)):
                logger.exception("Request %s %s failed", self.command, self.path)
            self._send_error(exc)
        except Exception as exc:
            if is_client_disconnect(exc):
                return
            logger.exception("Request %s %s failed", self.command, self.path)
            self._send_json(500, {"error": "internal_error", "detail": str(exc)})

    # Invoices

    def _create_invoice(self) -> None:
        payload = self._read_json()
        if payload is None:
            return

        raw_items = payload.get("line_items", payload.get("items"))
        if isinstance(raw_items, list):
            too_large = check_item_count(len(raw_items), self.server.settings.max_pages)
            if too_large is not None:
                status, body = too_large
                self._send_json(status, body)
                return

        manager = self.server.manager
        invoice = manager.request_invoice(**parse_invoice_request(payload))
        try:
            link = manager.issue_payment_link(invoice.id)
        except GatewayUnavailable as exc:
            self._send_json(
                503,
                {"error": exc.code, "detail": str(exc), "invoice_id": invoice.id, "state": invoice.state.value},
            )
            return
        self._send_json(201, link_view(link, manager.get_invoice(invoice.id)))

    def _issue_payment_link(self, invoice_id: str) -> None:
        manager = self.server.manager
        link = manager.issue_payment_link(invoice_id)
        self._send_json(200, link_view(link, manager.get_invoice(invoice_id)))

    def _show_invoice(self, invoice_id: str) -> None:
        self._send_json(200, invoice_view(self.server.manager.get_invoice(invoice_id)))

    def _list_invoices(self, query: str) -> None:
        raw_state = (parse_qs(query).get("state") or [InvoiceState.FAILED.value])[0]
        try:
            state = InvoiceState(raw_state.lower())
        except ValueError as exc:
            raise InvalidInvoiceData(f"Unknown state {raw_state!r}.") from exc
        invoices = self.server.manager.invoices_in_state(state)
        self._send_json(200, {"state": state.value, "invoices": [invoice_view(i) for i in invoices]})

    # Payment events

    def _pre_checkout(self) -> None:
        payload = self._read_json()
        if payload is None or not self._authorized(WEBHOOK_SECRET_HEADER):
            return
        decision = self.server.manager.handle_pre_checkout(parse_pre_checkout(payload))
        body: Dict[str, Any] = {"ok": decision.accepted}
        if decision.error_message:
            body["error_message"] = decision.error_message
        self._send_json(200, body)

    def _payment_confirmed(self) -> None:
        payload = self._read_json()
        if payload is None or not self._authorized(WEBHOOK_SECRET_HEADER):
            return
        outcome = self.server.manager.handle_payment_confirmed(parse_payment_confirmation(payload))
        self._send_json(200, {"outcome": outcome.value})

    def _telegram_update(self) -> None:
        update = self._read_json()
        if update is None or not self._authorized(TELEGRAM_SECRET_HEADER):
            return

        manager = self.server.manager
        try:
            event = parse_update(update)
            if isinstance(event, PreCheckoutQuery):
                manager.handle_pre_checkout(event)
            elif isinstance(event, PaymentConfirmation):
                manager.handle_payment_confirmed(event)
        except (InvalidInvoiceData, UnknownInvoice) as exc:
            # answering with an error would only make Telegram redeliver it
            logger.warning("Ignoring Telegram update %s: %s", update.get("update_id"), exc)
        self._send_json(200, {"ok": True})

    def handle_one_request(self) -> None:
        try:
            super().handle_one_request()
        except Exception as exc:
            if is_client_disconnect(exc):
                return
            raise

    def log_message(self, format: str, *args: Any) -> None:
        logger.debug("%s - %s", self.address_string(), format % args)


class InvoiceHTTPServer(ThreadingHTTPServer):
    daemon_threads = True
    allow_reuse_address = True

    def __init__(
        self,
        server_address: Tuple[str, int],
        manager: InvoiceLifecycleManager,
        settings: Settings,
    ) -> None:
        self.manager = manager
        self.settings = settings
        self.started_at = time.monotonic()
        self.request_queue_size = settings.listen_backlog
        super().__init__(server_address, InvoiceHandler)


def build_store(settings: Settings) -> InvoiceStore:
    if settings.store_dir:
        return JsonFileInvoiceStore(settings.store_dir)
    logger.warning("INVOICE_STORE_DIR is not set; invoices are kept in memory only")
    return InMemoryInvoiceStore()


def build_manager(
    settings: Settings,
    renderer: Renderer,
    client: Optional[TelegramBotClient] = None,
) -> InvoiceLifecycleManager:
    if client is None:
        client = TelegramBotClient(
            require_bot_token(settings),
            api_base=settings.telegram_api_base,
            timeout=settings.http_timeout_ms / 1000.0,
        )
    return InvoiceLifecycleManager(
        settings=settings,
        store=build_store(settings),
        gateway=TelegramPaymentGateway(client, provider_token=settings.telegram_provider_token),
        channel=TelegramDeliveryChannel(client, protect_content=settings.protect_content),
        renderer=renderer,
    )


def run(settings: Settings) -> None:
    load_render_invoice()
    require_bot_token(settings)
    if not settings.webhook_secret:
        logger.warning("INVOICE_WEBHOOK_SECRET is not set; payment webhooks are unauthenticated")

    pool = RenderPool.from_settings(settings)
    pool.start()
    client = TelegramBotClient(
        settings.telegram_bot_token,
        api_base=settings.telegram_api_base,
        timeout=settings.http_timeout_ms / 1000.0,
    )
    server = None
    try:
        manager = build_manager(settings, pool.render, client=client)
        manager.fail_interrupted()
        server = InvoiceHTTPServer((settings.host, settings.port), manager, settings)
        logger.info("Invoice bot listening on http://%s:%d", settings.host, settings.port)
        server.serve_forever()
    finally:
        if server is not None:
            server.server_close()
        pool.shutdown()
        client.close()


__all__ = ["ConfigurationError", "DependencyError", "InvoiceHTTPServer", "build_manager", "run"]
