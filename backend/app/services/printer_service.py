"""ESC/POS document rendering.

Builds the byte payloads sent to kitchen, receipt and label printers from an
order. Layout options come from the restaurant's print settings.
"""

import logging
from dataclasses import dataclass, fields
from datetime import datetime
from decimal import Decimal
from io import BytesIO
from typing import Dict, List, Optional

from app.core.clock import utcnow
from app.models.order import Order
from app.models.printer import PrintType

logger = logging.getLogger(__name__)


# ============================================================================
# ESC/POS Command Constants
# ============================================================================

class ESC:
    """ESC/POS command bytes."""
    INIT = b'\x1b\x40'  # Initialize printer
    CUT_PARTIAL = b'\x1d\x56\x01'
    FEED_LINES = b'\x1b\x64'  # Feed n lines
    BEEP = b'\x1b\x42'

    # Text formatting
    BOLD_ON = b'\x1b\x45\x01'
    BOLD_OFF = b'\x1b\x45\x00'
    UNDERLINE_ON = b'\x1b\x2d\x01'
    UNDERLINE_OFF = b'\x1b\x2d\x00'
    DOUBLE_HEIGHT_ON = b'\x1b\x21\x10'
    DOUBLE_WIDTH_ON = b'\x1b\x21\x20'
    DOUBLE_SIZE_ON = b'\x1b\x21\x30'
    NORMAL_SIZE = b'\x1b\x21\x00'

    # Text alignment
    ALIGN_LEFT = b'\x1b\x61\x00'
    ALIGN_CENTER = b'\x1b\x61\x01'
    ALIGN_RIGHT = b'\x1b\x61\x02'

    CHARSET_PC850 = b'\x1b\x74\x02'  # Multilingual


@dataclass
class PrintSettings:
    """Per-restaurant layout options, stored in ``Restaurant.print_settings``."""
    paper_width: int = 80  # mm (80 or 58)
    chars_per_line: int = 48
    auto_cut: bool = True
    header_text: str = ""
    footer_message: str = "Thank you for your order!"
    show_item_modifiers: bool = True
    show_special_instructions: bool = True
    show_customer_info: bool = True
    group_by_category: bool = False

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "PrintSettings":
        data = dict(data or {})
        if data.get("paper_width") == 58 and "chars_per_line" not in data:
            data["chars_per_line"] = 32
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class ReceiptLine:
    """A line on a printed document."""
    text: str = ""
    bold: bool = False
    double_height: bool = False
    double_width: bool = False
    underline: bool = False
    align: str = "left"  # left, center, right


class EscPosRenderer:
    """Renders orders as ESC/POS byte streams."""

    def __init__(self, settings: Optional[PrintSettings] = None):
        self.settings = settings or PrintSettings()

    def _build_line(self, line: ReceiptLine) -> bytes:
        """Build ESC/POS commands for a single line."""
        data = BytesIO()

        if line.align == "center":
            data.write(ESC.ALIGN_CENTER)
        elif line.align == "right":
            data.write(ESC.ALIGN_RIGHT)
        else:
            data.write(ESC.ALIGN_LEFT)

        if line.bold:
            data.write(ESC.BOLD_ON)
        if line.underline:
            data.write(ESC.UNDERLINE_ON)
        if line.double_height and line.double_width:
            data.write(ESC.DOUBLE_SIZE_ON)
        elif line.double_height:
            data.write(ESC.DOUBLE_HEIGHT_ON)
        elif line.double_width:
            data.write(ESC.DOUBLE_WIDTH_ON)

        try:
            text_bytes = line.text.encode('cp850')
        except UnicodeEncodeError:
            text_bytes = line.text.encode('cp850', errors='replace')

        data.write(text_bytes)
        data.write(b'\n')

        if line.bold:
            data.write(ESC.BOLD_OFF)
        if line.underline:
            data.write(ESC.UNDERLINE_OFF)
        if line.double_height or line.double_width:
            data.write(ESC.NORMAL_SIZE)

        return data.getvalue()

    def _format_item_line(self, name: str, qty: int, amount: Decimal) -> str:
        """Format an item line with the amount right aligned."""
        width = self.settings.chars_per_line
        qty_str = f"{qty}x"
        price_str = f"{amount:.2f}"

        max_name_len = width - len(qty_str) - len(price_str) - 2
        if len(name) > max_name_len:
            name = name[:max_name_len - 2] + ".."

        spaces = max(width - len(qty_str) - 1 - len(name) - len(price_str), 1)
        return f"{qty_str} {name}{' ' * spaces}{price_str}"

    def _format_total_line(self, label: str, amount: Decimal) -> str:
        amount_str = f"{amount:.2f}"
        spaces = max(self.settings.chars_per_line - len(label) - len(amount_str), 1)
        return f"{label}{' ' * spaces}{amount_str}"

    def _build_divider(self, char: str = "-") -> bytes:
        return (char * self.settings.chars_per_line + "\n").encode('cp850')

    def _start(self, data: BytesIO) -> None:
        data.write(ESC.INIT)
        data.write(ESC.CHARSET_PC850)

    def _finish(self, data: BytesIO, feed: int = 3) -> None:
        data.write(b'\n\n')
        if self.settings.auto_cut:
            data.write(ESC.FEED_LINES + bytes([feed]))
            data.write(ESC.CUT_PARTIAL)

    def _customer_lines(self, order: Order) -> List[str]:
        if order.guest_info:
            lines = [f"Guest: {order.guest_info.get('name', '')}"]
            if order.guest_info.get("phone"):
                lines.append(f"Tel: {order.guest_info['phone']}")
            return lines
        if order.customer_id is not None:
            return [f"Customer #{order.customer_id}"]
        return []

    def _grouped_items(self, items: List[dict]) -> Dict[str, List[dict]]:
        groups: Dict[str, List[dict]] = {}
        for item in items:
            groups.setdefault(item.get("category") or "Other", []).append(item)
        return groups

    def _timestamp(self, order: Order) -> datetime:
        return order.created_at or utcnow()

    def build_kitchen_ticket(self, order: Order) -> bytes:
        """Build a kitchen ticket: large item lines, modifications and notes, no prices."""
        data = BytesIO()
        self._start(data)

        data.write(self._build_line(ReceiptLine(
            text=f"Order #{order.id}",
            bold=True,
            double_height=True,
            align="center"
        )))
        data.write(self._build_line(ReceiptLine(
            text=self._timestamp(order).strftime("%Y-%m-%d %H:%M"),
            align="center"
        )))
        if self.settings.show_customer_info:
            for text in self._customer_lines(order):
                data.write(self._build_line(ReceiptLine(text=text, align="center")))

        data.write(self._build_divider("="))

        if self.settings.group_by_category:
            sections = list(self._grouped_items(order.items).items())
        else:
            sections = [("", order.items)]

        for category, items in sections:
            if category:
                data.write(self._build_line(ReceiptLine(
                    text=f"-- {category.upper()} --",
                    bold=True,
                    align="center"
                )))
            for item in items:
                data.write(self._build_line(ReceiptLine(
                    text=f"{item['quantity']}x {item['name']}",
                    bold=True,
                    double_height=True
                )))
                if self.settings.show_item_modifiers:
                    for mod in item.get("modifications", []):
                        data.write(self._build_line(ReceiptLine(
                            text=f"    >> {mod}",
                            bold=True
                        )))

        if order.notes and self.settings.show_special_instructions:
            data.write(self._build_divider("-"))
            data.write(self._build_line(ReceiptLine(
                text=f"NOTE: {order.notes}",
                bold=True,
                underline=True
            )))

        self._finish(data, feed=2)
        data.write(ESC.BEEP + b'\x03\x03')
        return data.getvalue()

    def build_receipt(self, order: Order, restaurant_name: str = "") -> bytes:
        """Build a customer receipt with line prices and the order total."""
        data = BytesIO()
        self._start(data)

        if restaurant_name:
            data.write(self._build_line(ReceiptLine(
                text=restaurant_name,
                bold=True,
                double_height=True,
                align="center"
            )))
        if self.settings.header_text:
            for text in self.settings.header_text.splitlines():
                data.write(self._build_line(ReceiptLine(text=text, align="center")))

        data.write(self._build_divider("="))
        data.write(self._build_line(ReceiptLine(
            text=self._timestamp(order).strftime("%Y-%m-%d %H:%M:%S"),
            align="center"
        )))
        data.write(self._build_line(ReceiptLine(
            text=f"Order: #{order.id}",
            bold=True,
            align="center"
        )))
        if self.settings.show_customer_info:
            for text in self._customer_lines(order):
                data.write(self._build_line(ReceiptLine(text=text, align="center")))

        data.write(self._build_divider("-"))

        for item in order.items:
            amount = Decimal(str(item["price"])) * item["quantity"]
            data.write(self._build_line(ReceiptLine(
                text=self._format_item_line(item["name"], item["quantity"], amount)
            )))
            if self.settings.show_item_modifiers:
                for mod in item.get("modifications", []):
                    data.write(self._build_line(ReceiptLine(text=f"  + {mod}")))

        data.write(self._build_divider("="))
        data.write(self._build_line(ReceiptLine(
            text=self._format_total_line("TOTAL:", Decimal(str(order.total_price))),
            bold=True,
            double_height=True
        )))
        data.write(self._build_divider("="))

        data.write(b'\n')
        data.write(self._build_line(ReceiptLine(
            text=self.settings.footer_message,
            align="center"
        )))

        self._finish(data)
        return data.getvalue()

    def build_label(self, order: Order) -> bytes:
        """Build a bag/pickup label: order number, customer and item count."""
        data = BytesIO()
        self._start(data)

        data.write(self._build_line(ReceiptLine(
            text=f"#{order.id}",
            bold=True,
            double_height=True,
            double_width=True,
            align="center"
        )))
        for text in self._customer_lines(order):
            data.write(self._build_line(ReceiptLine(text=text, bold=True, align="center")))

        item_count = sum(item["quantity"] for item in order.items)
        data.write(self._build_line(ReceiptLine(
            text=f"{item_count} item(s)",
            align="center"
        )))

        self._finish(data, feed=1)
        return data.getvalue()


def render_print_job(
    order: Order,
    print_type: PrintType,
    settings: Optional[PrintSettings] = None,
    restaurant_name: str = "",
) -> bytes:
    """Render the document a print job delivers."""
    renderer = EscPosRenderer(settings)
    if print_type == PrintType.KITCHEN_TICKET:
        return renderer.build_kitchen_ticket(order)
    if print_type == PrintType.RECEIPT:
        return renderer.build_receipt(order, restaurant_name=restaurant_name)
    if print_type == PrintType.LABEL:
        return renderer.build_label(order)
    raise ValueError(f"Unknown print type: {print_type}")
