"""Page geometry and colors for the invoice PDF (points, top-left origin)."""

from __future__ import annotations

X_LEFT = 48
X_ITEM = 45
X_BAR = 30
BAR_W = 552
BAR_H = 20

# First-page table header
BAR_Y_FIRST = 229.0
BAR_TEXT_Y_FIRST = 241.2

# Continuation-page table header (no top invoice header)
BAR_Y_CONT = 12.8
BAR_TEXT_Y_CONT = 24.8

TITLE_RIGHT = 573
NUMBER_RIGHT = 568
DATE_LABEL_RIGHT = 461
RIGHT_AMOUNT = 566
RATE_RIGHT = 492
LABEL_RIGHT = 491

QTY_CENTER = 375
RATE_CENTER = 457
AMOUNT_CENTER = 531
ITEM_TO_QTY_GUTTER = 24

NAME_Y = 33.8
CONTACT_Y = 47.0
TITLE_Y = 48.0
NUMBER_Y = 67.5
DATE_Y = 117.8
STATUS_Y = 135.0
BALANCE_Y = 161.8

BILL_TO_LABEL_Y = 131.2
BILL_TO_NAME_Y = 147.0
BILL_TO_ADDR_Y = 159.0
ADDR_LINE_H = 12.0

BALANCE_BOX_X = 317.0
BALANCE_BOX_Y = 146.0
BALANCE_BOX_W = 270.0
BALANCE_BOX_H = 27.0

ITEMS_START_Y_FIRST = 266.8
ITEMS_START_Y_CONT = 42.0
ITEM_ROW_H = 17.2
NAME_LINE_H = 12.0

TOTALS_START_Y_FIRST = 335.8
TOTAL_ROW_H_FIRST = 17.2
TOTALS_START_Y_CONT = 141.8
TOTAL_ROW_H_CONT = 21.7

# Pagination capacities
FIRST_PAGE_CAPACITY = 26
MID_PAGE_CAPACITY = 40
LAST_PAGE_CAPACITY = 6

COLOR_TITLE = (94, 94, 94)
COLOR_INVOICE_NUM = (149, 149, 149)
COLOR_LABEL = (105, 105, 105)
COLOR_BILLTO = (145, 145, 145)
COLOR_TEXT = (106, 106, 106)
COLOR_TEXT_ALT = (115, 115, 115)
COLOR_ITEM = (105, 105, 105)
COLOR_NUM = (113, 113, 113)
COLOR_TOTAL_LABEL = (118, 118, 118)
COLOR_BAR = (58, 58, 58)
COLOR_BAR_TEXT = (234, 234, 234)
COLOR_BOX = (249, 249, 249)
COLOR_PAID = (46, 125, 50)

FONT_SIZE_TITLE = 28
FONT_SIZE_NORMAL = 10
FONT_SIZE_SMALL = 9
