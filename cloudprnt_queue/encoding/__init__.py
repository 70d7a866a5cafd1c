"""
Receipt encoding for CloudPRNT printers

Renders order items into ESC/POS byte streams.
"""

from .escpos import (
    Commands,
    ReceiptItem,
    ReceiptOptions,
    ReceiptBuilder,
    KITCHEN,
    CUSTOMER,
    CATEGORY_ORDER,
    DEFAULT_CATEGORY,
    build_receipt,
    build_test_receipt,
    build_kitchen_receipt_by_type,
    build_table_receipt,
    build_takeaway_receipt,
    category_order,
    format_line,
    format_money
)

__all__ = [
    "Commands",
    "ReceiptItem",
    "ReceiptOptions",
    "ReceiptBuilder",
    "KITCHEN",
    "CUSTOMER",
    "CATEGORY_ORDER",
    "DEFAULT_CATEGORY",
    "build_receipt",
    "build_test_receipt",
    "build_kitchen_receipt_by_type",
    "build_table_receipt",
    "build_takeaway_receipt",
    "category_order",
    "format_line",
    "format_money"
]
