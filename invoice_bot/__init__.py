"""Invoice bot: pay for an invoice in chat, receive the PDF exactly once."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from .config import Settings
from .models import Invoice


def render_invoice(invoice: Invoice, rendered_at: datetime) -> bytes:
    from .rendering import render_invoice as _render_invoice

    return _render_invoice(invoice, rendered_at)


def run(settings: Optional[Settings] = None) -> None:
    from .server import run as _run

    _run(settings or Settings.from_env())


__all__ = ["Invoice", "Settings", "render_invoice", "run"]
