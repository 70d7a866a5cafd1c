"""
ESC/POS receipt encoder

Turns order line items into the control-code byte stream a thermal printer
expects. Items are grouped by category and the categories are printed in a
fixed course order so the kitchen sees starters before mains before desserts.

Every receipt starts with the printer initialize command and ends with a
paper cut. Rendering is a pure function of its inputs: the same items and
options always produce the same bytes.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union


ESC = b"\x1b"
GS = b"\x1d"
LF = b"\n"


class Commands:
    """ESC/POS control sequences used by the encoder."""
    INIT = ESC + b"@"
    ALIGN_LEFT = ESC + b"a" + b"\x00"
    ALIGN_CENTER = ESC + b"a" + b"\x01"
    DOUBLE_SIZE = ESC + b"!" + b"\x30"
    NORMAL_SIZE = ESC + b"!" + b"\x00"
    BOLD_ON = ESC + b"E" + b"\x01"
    BOLD_OFF = ESC + b"E" + b"\x00"
    UNDERLINE_ON = ESC + b"-" + b"\x01"
    UNDERLINE_OFF = ESC + b"-" + b"\x00"
    PARTIAL_CUT = GS + b"V" + b"\x42" + b"\x00"
    FULL_CUT = GS + b"V" + b"\x41" + b"\x00"
    CUT = PARTIAL_CUT


KITCHEN = "kitchen"
CUSTOMER = "customer"

DEFAULT_CATEGORY = "Other Items"
UNKNOWN_CATEGORY_ORDER = 999.0

# Lower numbers print first
CATEGORY_ORDER: Dict[str, float] = {
    # Starters
    "forretter": 1, "forret": 1, "appetizers": 1, "starter": 1, "starters": 1,

    # Mains
    "hovedretter": 2, "hovedret": 2, "main": 2, "mains": 2,
    "main course": 2, "main courses": 2, "entrees": 2,
    "kød": 2.1, "meat": 2.1,
    "fisk": 2.2, "fish": 2.2, "seafood": 2.2,
    "vegetar": 2.3, "vegetarian": 2.3, "vegan": 2.3,

    # Sides
    "tilbehør": 2.5, "sides": 2.5, "side dishes": 2.5,

    # Desserts
    "desserter": 3, "dessert": 3, "desserts": 3, "sweets": 3, "kage": 3, "cake": 3,

    # Beverages
    "drikkevarer": 4, "drinks": 4, "beverages": 4,
    "kaffe": 4.1, "coffee": 4.1,
    "te": 4.2, "tea": 4.2,
    "øl": 4.3, "beer": 4.3,
    "vin": 4.4, "wine": 4.4,
    "cocktails": 4.5,
    "spirits": 4.6,
}


@dataclass
class ReceiptItem:
    """A single order line."""

    name: str
    quantity: int = 1
    unit_price: int = 0  # minor currency units
    modifiers: List[str] = field(default_factory=list)
    category_name: Optional[str] = None
    product_type: Optional[str] = None

    @property
    def line_total(self) -> int:
        return self.quantity * self.unit_price

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ReceiptItem":
        """Build an item from a loosely shaped dict; absent fields get defaults."""
        modifiers = data.get("modifiers") or []
        if isinstance(modifiers, str):
            modifiers = [modifiers]
        return cls(
            name=str(data.get("name") or ""),
            quantity=_as_int(data.get("quantity"), 1),
            unit_price=_as_int(data.get("unit_price", data.get("price")), 0),
            modifiers=[str(m) for m in modifiers if m],
            category_name=_as_name(data.get("category_name") or data.get("categoryName") or data.get("category")),
            product_type=_as_name(data.get("product_type") or data.get("productType")),
        )


@dataclass
class ReceiptOptions:
    """Rendering options for a receipt."""

    kind: str = CUSTOMER
    order_reference: Optional[str] = None
    customer_name: Optional[str] = None
    header_text: Optional[str] = None
    footer_text: Optional[str] = None
    show_prices_on_kitchen: bool = False
    order_time: Optional[datetime] = None
    paper_width: int = 48
    currency_symbol: str = "$"
    encoding: str = "cp437"

    @property
    def is_kitchen(self) -> bool:
        return self.kind == KITCHEN

    @property
    def show_prices(self) -> bool:
        return not self.is_kitchen or self.show_prices_on_kitchen


ItemLike = Union[ReceiptItem, Mapping[str, Any]]


def category_order(category_name: Optional[str]) -> float:
    """Sort key for a category; unknown or missing categories go last."""
    if not category_name:
        return UNKNOWN_CATEGORY_ORDER
    return CATEGORY_ORDER.get(str(category_name).strip().lower(), UNKNOWN_CATEGORY_ORDER)


def group_by_category(items: Iterable[ReceiptItem]) -> List[tuple]:
    """
    Group items by category name and order the groups for printing.

    Groups keep the order in which their first item appeared; sorting is
    stable, so categories with the same rank (all unknown ones, for example)
    stay in input order.
    """
    groups: Dict[str, List[ReceiptItem]] = {}
    for item in items:
        key = _as_name(item.category_name) or DEFAULT_CATEGORY
        groups.setdefault(key, []).append(item)
    return sorted(groups.items(), key=lambda pair: category_order(pair[0]))


def format_line(left: str, right: str = "", width: int = 48) -> str:
    """Left text and right-aligned text padded to the paper width."""
    if len(left) + len(right) >= width:
        return left[:width]
    return left + " " * (width - len(left) - len(right)) + right


def format_money(amount: int, currency_symbol: str = "$") -> str:
    sign = "-" if amount < 0 else ""
    amount = abs(amount)
    return f"{sign}{currency_symbol}{amount // 100}.{amount % 100:02d}"


class ReceiptBuilder:
    """
    Accumulates receipt bytes.

    The initialize command is written on construction and finish() always
    appends the cut, so a builder can't produce a receipt without both.
    """

    def __init__(self, width: int = 48, encoding: str = "cp437"):
        self.width = width
        self.encoding = encoding
        self._parts: List[bytes] = [Commands.INIT]

    def raw(self, command: bytes) -> "ReceiptBuilder":
        self._parts.append(command)
        return self

    def text(self, value: str) -> "ReceiptBuilder":
        self._parts.append(value.encode(self.encoding, errors="replace"))
        return self

    def line(self, value: str = "") -> "ReceiptBuilder":
        return self.text(value).raw(LF)

    def columns(self, left: str, right: str = "") -> "ReceiptBuilder":
        return self.line(format_line(left, right, self.width))

    def separator(self, char: str = "-") -> "ReceiptBuilder":
        return self.line(char * self.width)

    def feed(self, lines: int = 1) -> "ReceiptBuilder":
        return self.raw(LF * lines)

    def bold(self, value: str) -> "ReceiptBuilder":
        return self.raw(Commands.BOLD_ON).line(value).raw(Commands.BOLD_OFF)

    def finish(self, cut: bytes = Commands.CUT) -> bytes:
        return b"".join(self._parts) + cut


def build_receipt(items: Sequence[ItemLike], options: Optional[ReceiptOptions] = None) -> bytes:
    """Render an order as an ESC/POS receipt grouped by category."""
    options = options or ReceiptOptions()
    line_items = [_coerce_item(item) for item in (items or [])]
    receipt = ReceiptBuilder(options.paper_width, options.encoding)

    _write_header(receipt, options)

    total = 0
    grouped = group_by_category(line_items)
    for index, (category, category_items) in enumerate(grouped):
        receipt.raw(Commands.BOLD_ON + Commands.UNDERLINE_ON)
        receipt.line(category.upper())
        receipt.raw(Commands.UNDERLINE_OFF + Commands.BOLD_OFF)
        receipt.separator("·")

        for item in category_items:
            total += item.line_total
            if options.is_kitchen:
                _write_kitchen_item(receipt, item, options)
            else:
                _write_customer_item(receipt, item, options)
            receipt.feed()

        if index < len(grouped) - 1:
            receipt.feed()

    if options.show_prices:
        receipt.separator()
        receipt.raw(Commands.BOLD_ON)
        receipt.columns("TOTAL:", format_money(total, options.currency_symbol))
        receipt.raw(Commands.BOLD_OFF)
        receipt.feed()

    footer = options.footer_text
    if not footer and not options.is_kitchen:
        footer = "Thank you for your order!"
    if footer:
        receipt.raw(Commands.ALIGN_CENTER).line(footer)

    receipt.raw(Commands.ALIGN_LEFT).feed(3)
    return receipt.finish()


def _write_header(receipt: ReceiptBuilder, options: ReceiptOptions):
    receipt.raw(Commands.ALIGN_CENTER + Commands.DOUBLE_SIZE)
    if options.header_text:
        receipt.line(options.header_text.upper())
    else:
        receipt.line("*** KITCHEN ORDER ***" if options.is_kitchen else "*** RECEIPT ***")
    receipt.raw(Commands.NORMAL_SIZE + Commands.ALIGN_LEFT).feed()

    receipt.separator()
    if options.order_reference:
        receipt.columns("Order:", options.order_reference)
    if options.customer_name:
        receipt.columns("Customer:", options.customer_name)
    if options.order_time:
        receipt.columns("Time:", options.order_time.strftime("%H:%M:%S"))
    if options.is_kitchen:
        receipt.raw(Commands.BOLD_ON)
        receipt.columns("Type:", "KITCHEN COPY")
        receipt.raw(Commands.BOLD_OFF)
    receipt.separator()
    receipt.feed()


def _write_kitchen_item(receipt: ReceiptBuilder, item: ReceiptItem, options: ReceiptOptions):
    receipt.bold(f"{item.quantity}x {item.name}")
    for modifier in item.modifiers:
        receipt.line(f"   + {modifier}")
    if item.product_type and item.product_type != item.category_name:
        receipt.line(f"   [{item.product_type.upper()}]")
    if options.show_prices_on_kitchen:
        receipt.columns("", format_money(item.line_total, options.currency_symbol))


def _write_customer_item(receipt: ReceiptBuilder, item: ReceiptItem, options: ReceiptOptions):
    price = format_money(item.line_total, options.currency_symbol) if options.show_prices else ""
    receipt.columns(f"{item.quantity}x {item.name}", price)
    for modifier in item.modifiers:
        receipt.line(f"   + {modifier}")


def build_test_receipt(paper_width: int = 48, printed_at: Optional[datetime] = None) -> bytes:
    """A short page used to check a printer end to end."""
    receipt = ReceiptBuilder(paper_width)
    receipt.raw(Commands.ALIGN_CENTER + Commands.DOUBLE_SIZE)
    receipt.line("*** PRINTER TEST ***")
    receipt.raw(Commands.NORMAL_SIZE + Commands.ALIGN_LEFT).feed()
    receipt.separator()
    if printed_at:
        receipt.columns("Date:", printed_at.strftime("%Y-%m-%d"))
        receipt.columns("Time:", printed_at.strftime("%H:%M:%S"))
        receipt.separator()
    receipt.feed()
    receipt.raw(Commands.ALIGN_CENTER)
    receipt.line("Test successful!")
    receipt.line("Printer is working correctly.")
    receipt.feed()
    receipt.line("CloudPRNT")
    receipt.raw(Commands.ALIGN_LEFT).feed(2)
    return receipt.finish()


def build_kitchen_receipt_by_type(items: Sequence[ItemLike], product_type: str, order_reference: str) -> bytes:
    """
    Kitchen ticket for one product type (e.g. only the bar's drinks).

    Returns empty bytes when no item has the requested type, so callers can
    skip enqueueing an empty ticket.
    """
    wanted = product_type.lower()
    matching = [
        item for item in (_coerce_item(i) for i in (items or []))
        if (item.product_type or "").lower() == wanted
    ]
    if not matching:
        return b""
    return build_receipt(matching, ReceiptOptions(
        kind=KITCHEN,
        order_reference=order_reference,
        header_text=f"{product_type.upper()} ORDER",
    ))


def build_table_receipt(items: Sequence[ItemLike], table_number: str, kind: str = CUSTOMER) -> bytes:
    return build_receipt(items, ReceiptOptions(kind=kind, order_reference=f"Table {table_number}"))


def build_takeaway_receipt(items: Sequence[ItemLike], order_number: str, customer_name: str,
                           kind: str = CUSTOMER) -> bytes:
    return build_receipt(items, ReceiptOptions(
        kind=kind,
        order_reference=f"#{order_number}",
        customer_name=customer_name,
        header_text="TAKEAWAY ORDER" if kind == KITCHEN else "TAKEAWAY RECEIPT",
    ))


def _coerce_item(item: ItemLike) -> ReceiptItem:
    if isinstance(item, ReceiptItem):
        return item
    if isinstance(item, Mapping):
        return ReceiptItem.from_mapping(item)
    return ReceiptItem(name=str(item))


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value) if value not in (None, "") else default
    except (TypeError, ValueError):
        return default


def _as_name(value: Any) -> Optional[str]:
    """Category and type names may arrive as plain strings or as {"name": ...} objects."""
    if isinstance(value, Mapping):
        value = value.get("name")
    if value in (None, ""):
        return None
    return str(value)
