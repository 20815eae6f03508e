"""Telegram Bot API: payable invoice links, pre-checkout answers and document delivery."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Union

import requests

from .errors import DeliveryError, InvalidInvoiceData, InvoiceBotError
from .models import DeliveryReceipt, PaymentConfirmation, PreCheckoutQuery
from .net import is_transient_status

logger = logging.getLogger(__name__)

# Bot API limits
MAX_DOCUMENT_BYTES = 50 * 1024 * 1024
MAX_TITLE_LENGTH = 32
MAX_DESCRIPTION_LENGTH = 255
MAX_CAPTION_LENGTH = 1024

INVALID_CHAT_MARKERS = (
    "chat not found",
    "chat_id is empty",
    "user not found",
    "peer_id_invalid",
    "bot was blocked",
    "user is deactivated",
    "bot can't initiate",
)
TOO_LARGE_MARKERS = ("too big", "too large", "request entity too large")


class TelegramApiError(InvoiceBotError):
    code = "telegram_api_error"

    def __init__(self, error_code: Optional[int], description: str, retry_after: Optional[float] = None) -> None:
        super().__init__(error_code, description, retry_after)
        self.error_code = error_code
        self.description = description
        self.retry_after = retry_after

    def __str__(self) -> str:
        return f"Telegram API error {self.error_code}: {self.description}"


class TelegramTransportError(InvoiceBotError):
    code = "telegram_transport_error"


class TelegramBotClient:
    def __init__(
        self,
        token: str,
        api_base: str = "https://api.telegram.org",
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not token:
            raise ValueError("A Telegram bot token is required.")
        self.token = token
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _redact(self, text: str) -> str:
        return text.replace(self.token, "<token>")

    def call(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        files: Optional[Dict[str, Any]] = None,
    ) -> Any:
        url = f"{self.api_base}/bot{self.token}/{method}"
        try:
            if files:
                response = self.session.post(url, data=params or {}, files=files, timeout=self.timeout)
            else:
                response = self.session.post(url, json=params or {}, timeout=self.timeout)
        except requests.RequestException as exc:
            raise TelegramTransportError(f"{method}: {self._redact(str(exc))}") from exc

        try:
            body = response.json()
        except ValueError as exc:
            raise TelegramApiError(
                response.status_code,
                f"{method}: non-JSON response ({response.status_code})",
            ) from exc

        if not isinstance(body, dict) or not body.get("ok"):
            body = body if isinstance(body, dict) else {}
            parameters = body.get("parameters") or {}
            raise TelegramApiError(
                body.get("error_code", response.status_code),
                self._redact(str(body.get("description", ""))),
                retry_after=parameters.get("retry_after"),
            )
        return body.get("result")

    def close(self) -> None:
        self.session.close()


class TelegramPaymentGateway:
    """Mints Telegram invoice links whose payload is our invoice id."""

    def __init__(self, client: TelegramBotClient, provider_token: str = "") -> None:
        self.client = client
        self.provider_token = provider_token

    def create_payable_link(
        self,
        invoice_id: str,
        amount: int,
        currency: str,
        title: str,
        description: str,
    ) -> str:
        params: Dict[str, Any] = {
            "title": title[:MAX_TITLE_LENGTH],
            "description": description[:MAX_DESCRIPTION_LENGTH],
            "payload": invoice_id,
            "currency": currency,
            "prices": [{"label": title[:MAX_TITLE_LENGTH], "amount": amount}],
        }
        # Stars (XTR) payments must not carry a provider token
        if self.provider_token and currency != "XTR":
            params["provider_token"] = self.provider_token
        link = self.client.call("createInvoiceLink", params)
        if not isinstance(link, str) or not link:
            raise TelegramApiError(None, "createInvoiceLink returned no link")
        return link

    def answer_pre_checkout(self, query_id: str, ok: bool, error_message: Optional[str] = None) -> None:
        params: Dict[str, Any] = {"pre_checkout_query_id": query_id, "ok": ok}
        if not ok:
            params["error_message"] = error_message or "This invoice can no longer be paid."
        self.client.call("answerPreCheckoutQuery", params)


def classify_send_error(exc: TelegramApiError) -> DeliveryError:
    description = (exc.description or "").lower()
    if exc.error_code == 413 or any(marker in description for marker in TOO_LARGE_MARKERS):
        return DeliveryError(DeliveryError.PAYLOAD_TOO_LARGE, str(exc))
    if is_transient_status(exc.error_code):
        return DeliveryError(DeliveryError.TRANSIENT_FAILURE, str(exc), retry_after=exc.retry_after)
    if exc.error_code != 403 and not any(marker in description for marker in INVALID_CHAT_MARKERS):
        logger.warning("Unclassified sendDocument error treated as fatal: %s", exc)
    return DeliveryError(DeliveryError.INVALID_ADDRESS, str(exc))


class TelegramDeliveryChannel:
    """Sends rendered documents to a Telegram chat."""

    def __init__(self, client: TelegramBotClient, protect_content: bool = True) -> None:
        self.client = client
        self.protect_content = protect_content

    def deliver(self, address: str, document: bytes, metadata: Dict[str, Any]) -> DeliveryReceipt:
        if not address or not address.strip():
            raise DeliveryError(DeliveryError.INVALID_ADDRESS, "empty chat id")
        if len(document) > MAX_DOCUMENT_BYTES:
            raise DeliveryError(
                DeliveryError.PAYLOAD_TOO_LARGE,
                f"document is {len(document)} bytes; limit is {MAX_DOCUMENT_BYTES}",
            )

        filename = str(metadata.get("filename") or "invoice.pdf")
        params = {
            "chat_id": address,
            "caption": str(metadata.get("caption", ""))[:MAX_CAPTION_LENGTH],
            "protect_content": "true" if self.protect_content else "false",
        }
        files = {"document": (filename, document, "application/pdf")}
        try:
            result = self.client.call("sendDocument", params, files=files)
        except TelegramTransportError as exc:
            raise DeliveryError(DeliveryError.TRANSIENT_FAILURE, str(exc)) from exc
        except TelegramApiError as exc:
            raise classify_send_error(exc) from exc

        result = result if isinstance(result, dict) else {}
        message_id = result.get("message_id")
        return DeliveryReceipt(
            address=address,
            message_id=str(message_id) if message_id is not None else None,
            file_id=(result.get("document") or {}).get("file_id"),
            raw=result,
        )


PaymentEvent = Union[PreCheckoutQuery, PaymentConfirmation]


def _payload_field(source: Dict[str, Any], key: str, kind: type) -> Any:
    value = source.get(key)
    if not isinstance(value, kind) or isinstance(value, bool):
        raise InvalidInvoiceData(f"Telegram update field '{key}' is missing or malformed.")
    return value


def parse_update(update: Dict[str, Any]) -> Optional[PaymentEvent]:
    """Extract the payment event from a Telegram update, if it carries one."""
    query = update.get("pre_checkout_query")
    if isinstance(query, dict):
        return PreCheckoutQuery(
            invoice_id=_payload_field(query, "invoice_payload", str),
            total_amount=_payload_field(query, "total_amount", int),
            currency=_payload_field(query, "currency", str).upper(),
            query_id=str(_payload_field(query, "id", str)),
        )

    message = update.get("message")
    payment = message.get("successful_payment") if isinstance(message, dict) else None
    if isinstance(payment, dict):
        provider_reference = payment.get("provider_payment_charge_id")
        return PaymentConfirmation(
            invoice_id=_payload_field(payment, "invoice_payload", str),
            payment_reference=_payload_field(payment, "telegram_payment_charge_id", str),
            total_amount=_payload_field(payment, "total_amount", int),
            currency=_payload_field(payment, "currency", str).upper(),
            provider_reference=provider_reference or None,
        )
    return None
