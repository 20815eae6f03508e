"""Invoice PDF rendering.

The renderer is a pure function of the invoice and an explicitly supplied
rendering timestamp: it never reads the clock, touches the network or knows
how the document will be delivered.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import List, Sequence, Tuple

from fpdf import FPDF

from .errors import RenderError
from .fonts import FontManager
from .formatting import currency_symbol, fmt_date, fmt_money, fmt_qty, round_money, split_lines, wrap_text
from .layout import (
    ADDR_LINE_H,
    AMOUNT_CENTER,
    BALANCE_BOX_H,
    BALANCE_BOX_W,
    BALANCE_BOX_X,
    BALANCE_BOX_Y,
    BALANCE_Y,
    BAR_H,
    BAR_TEXT_Y_CONT,
    BAR_TEXT_Y_FIRST,
    BAR_W,
    BAR_Y_CONT,
    BAR_Y_FIRST,
    BILL_TO_ADDR_Y,
    BILL_TO_LABEL_Y,
    BILL_TO_NAME_Y,
    COLOR_BAR,
    COLOR_BAR_TEXT,
    COLOR_BILLTO,
    COLOR_BOX,
    COLOR_INVOICE_NUM,
    COLOR_ITEM,
    COLOR_LABEL,
    COLOR_NUM,
    COLOR_PAID,
    COLOR_TEXT,
    COLOR_TEXT_ALT,
    COLOR_TITLE,
    COLOR_TOTAL_LABEL,
    CONTACT_Y,
    DATE_LABEL_RIGHT,
    DATE_Y,
    FONT_SIZE_NORMAL,
    FONT_SIZE_SMALL,
    FONT_SIZE_TITLE,
    ITEM_ROW_H,
    ITEM_TO_QTY_GUTTER,
    ITEMS_START_Y_CONT,
    ITEMS_START_Y_FIRST,
    LABEL_RIGHT,
    NAME_LINE_H,
    NAME_Y,
    NUMBER_RIGHT,
    NUMBER_Y,
    QTY_CENTER,
    RATE_CENTER,
    RATE_RIGHT,
    RIGHT_AMOUNT,
    STATUS_Y,
    TITLE_RIGHT,
    TITLE_Y,
    TOTAL_ROW_H_CONT,
    TOTAL_ROW_H_FIRST,
    TOTALS_START_Y_CONT,
    TOTALS_START_Y_FIRST,
    X_BAR,
    X_ITEM,
    X_LEFT,
)
from .models import Invoice, LineItem
from .pagination import page_slices

PDF_CREATOR = "invoice-bot"


@dataclass(frozen=True)
class InvoiceTotals:
    subtotal: float
    total: float
    currency_symbol: str

    @property
    def total_text(self) -> str:
        return round_money(self.total)


def validate_line_items(items: Sequence[LineItem]) -> None:
    if not items:
        raise RenderError(RenderError.INVALID_INPUT, "invoice has no line items")
    for index, item in enumerate(items):
        for label, value in (("quantity", item.quantity), ("unit_price", item.unit_price)):
            if not isinstance(value, (int, float)) or isinstance(value, bool):
                raise RenderError(RenderError.INVALID_INPUT, f"item {index}: {label} is not a number")
            if not math.isfinite(value) or value < 0:
                raise RenderError(RenderError.INVALID_INPUT, f"item {index}: {label} must be finite and >= 0")


class InvoiceRenderer:
    def __init__(self, invoice: Invoice, rendered_at: datetime) -> None:
        validate_line_items(invoice.line_items)
        self.invoice = invoice
        self.rendered_at = rendered_at
        self.items: Sequence[LineItem] = invoice.line_items

        self.pdf = FPDF(unit="pt", format="letter")
        self.pdf.set_auto_page_break(False)
        self.pdf.set_creation_date(rendered_at)
        self.pdf.set_title(f"Invoice {invoice.id}")
        self.pdf.set_creator(PDF_CREATOR)
        self.pdf.add_page()

        self.fonts = FontManager(self.pdf)
        self.totals = self._calculate_totals()

    def _calculate_totals(self) -> InvoiceTotals:
        subtotal = sum((item.amount for item in self.items), 0.0)
        return InvoiceTotals(
            subtotal=subtotal,
            total=subtotal,
            currency_symbol=currency_symbol(self.invoice.currency, unicode=self.fonts.unicode),
        )

    def _money(self, amount: float) -> str:
        return fmt_money(amount, self.totals.currency_symbol)

    def _draw_table_header(self, bar_y: float, text_y: float) -> None:
        self.pdf.set_fill_color(*COLOR_BAR)
        self.pdf.rect(X_BAR, bar_y, BAR_W, BAR_H, style="F")

        self.fonts.draw_text(X_ITEM, text_y, "Item", FONT_SIZE_SMALL, COLOR_BAR_TEXT, bold=True)
        for center, label in ((QTY_CENTER, "Quantity"), (RATE_CENTER, "Rate"), (AMOUNT_CENTER, "Amount")):
            self.fonts.draw_text_centered(center, text_y, label, FONT_SIZE_SMALL, COLOR_BAR_TEXT, bold=True)

    def _draw_items(self, start_y: float, page_items: Sequence[LineItem]) -> float:
        max_name_width = QTY_CENTER - X_ITEM - ITEM_TO_QTY_GUTTER
        y = start_y

        for item in page_items:
            lines: List[Tuple[str, bool]] = []
            for paragraph_index, paragraph in enumerate(split_lines(item.description.strip())):
                is_first = paragraph_index == 0
                for line in wrap_text(self.fonts, paragraph.strip(), max_name_width, FONT_SIZE_NORMAL, bold=is_first):
                    lines.append((line, is_first))

            for i, (line, is_bold) in enumerate(lines):
                self.fonts.draw_text(X_ITEM, y + i * NAME_LINE_H, line, FONT_SIZE_NORMAL, COLOR_ITEM, bold=is_bold)

            self.fonts.draw_text_centered(QTY_CENTER, y, fmt_qty(item.quantity), FONT_SIZE_NORMAL, COLOR_NUM)
            self.fonts.draw_text_right(RATE_RIGHT, y, self._money(item.unit_price), FONT_SIZE_NORMAL, COLOR_NUM)
            self.fonts.draw_text_right(RIGHT_AMOUNT, y, self._money(item.amount), FONT_SIZE_NORMAL, COLOR_NUM)

            y += (max(len(lines), 1) - 1) * NAME_LINE_H + ITEM_ROW_H

        return y

    def _draw_totals(self, start_y: float, row_h: float) -> None:
        rows = (
            ("Subtotal:", self._money(self.totals.subtotal)),
            ("Total:", self._money(self.totals.total)),
            ("Amount Paid:", self._money(self.totals.total)),
        )
        y = start_y
        for label, value in rows:
            self.fonts.draw_text_right(LABEL_RIGHT, y, label, FONT_SIZE_NORMAL, COLOR_TOTAL_LABEL)
            self.fonts.draw_text_right(RIGHT_AMOUNT, y, value, FONT_SIZE_NORMAL, COLOR_NUM)
            y += row_h

    def _draw_party(self, label: str, name_y: float, name: str, contact: str, x: float = X_LEFT) -> None:
        if label:
            self.fonts.draw_text(x, BILL_TO_LABEL_Y, label, FONT_SIZE_SMALL, COLOR_BILLTO)
        if name:
            self.fonts.draw_text(x, name_y, name, FONT_SIZE_NORMAL, COLOR_TEXT, bold=True)
        for i, line in enumerate(split_lines(contact)):
            line_y = (BILL_TO_ADDR_Y if label else CONTACT_Y) + i * ADDR_LINE_H
            self.fonts.draw_text(x, line_y, line, FONT_SIZE_SMALL, COLOR_TEXT_ALT)

    def _draw_header(self) -> None:
        issuer = self.invoice.issuer
        self._draw_party("", NAME_Y, issuer.name.strip(), issuer.contact.strip())

        self.fonts.draw_text_right(TITLE_RIGHT, TITLE_Y, "INVOICE", FONT_SIZE_TITLE, COLOR_TITLE)
        self.fonts.draw_text_right(NUMBER_RIGHT, NUMBER_Y, f"# {self.invoice.id}", FONT_SIZE_NORMAL, COLOR_INVOICE_NUM)

        bill_to = self.invoice.bill_to
        if bill_to.name.strip() or bill_to.contact.strip():
            self._draw_party("Bill To:", BILL_TO_NAME_Y, bill_to.name.strip(), bill_to.contact.strip())

        self.fonts.draw_text_right(DATE_LABEL_RIGHT, DATE_Y, "Date:", FONT_SIZE_NORMAL, COLOR_LABEL)
        self.fonts.draw_text_right(RIGHT_AMOUNT, DATE_Y, fmt_date(self.rendered_at), FONT_SIZE_NORMAL, COLOR_LABEL)
        self.fonts.draw_text_right(DATE_LABEL_RIGHT, STATUS_Y, "Status:", FONT_SIZE_NORMAL, COLOR_LABEL)
        self.fonts.draw_text_right(RIGHT_AMOUNT, STATUS_Y, "PAID", FONT_SIZE_NORMAL, COLOR_PAID, bold=True)

        self.pdf.set_fill_color(*COLOR_BOX)
        self.pdf.rect(BALANCE_BOX_X, BALANCE_BOX_Y, BALANCE_BOX_W, BALANCE_BOX_H, style="F")
        self.fonts.draw_text_right(DATE_LABEL_RIGHT, BALANCE_Y, "Balance Due:", FONT_SIZE_NORMAL, COLOR_TITLE, bold=True)
        self.fonts.draw_text_right(RIGHT_AMOUNT, BALANCE_Y, self._money(0.0), FONT_SIZE_NORMAL, COLOR_TITLE, bold=True)

    def _draw_pages(self) -> None:
        pages = page_slices(self.items)
        self._draw_header()
        self._draw_table_header(BAR_Y_FIRST, BAR_TEXT_Y_FIRST)
        items_end_y = self._draw_items(ITEMS_START_Y_FIRST, pages[0])

        if len(pages) == 1:
            self._draw_totals(max(TOTALS_START_Y_FIRST, items_end_y + ITEM_ROW_H), TOTAL_ROW_H_FIRST)
            return

        for page_items in pages[1:]:
            self.pdf.add_page()
            self._draw_table_header(BAR_Y_CONT, BAR_TEXT_Y_CONT)
            items_end_y = self._draw_items(ITEMS_START_Y_CONT, page_items)
        self._draw_totals(max(TOTALS_START_Y_CONT, items_end_y + ITEM_ROW_H), TOTAL_ROW_H_CONT)

    def render(self) -> bytes:
        self._draw_pages()
        return bytes(self.pdf.output())


def render_invoice(invoice: Invoice, rendered_at: datetime) -> bytes:
    try:
        return InvoiceRenderer(invoice, rendered_at).render()
    except RenderError:
        raise
    except Exception as exc:
        raise RenderError(RenderError.RENDER_FAILED, str(exc)) from exc
