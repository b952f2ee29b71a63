from __future__ import annotations

import logging
import re
from typing import Optional

from ordersync.catalog import STORE_NAME

logger = logging.getLogger(__name__)

_ORDER_ID_RE = re.compile(r"#(\d+)")


def format_header_comment(order_id: int | str, customer_name: str, label: str = STORE_NAME) -> str:
    """Invoice header comment, e.g. ``"Ussimo \\n#1736\\nMalle Tammekivi"``."""
    return f"{label} \n#{order_id}\n{customer_name}"


def extract_order_id(comment: Optional[str]) -> Optional[str]:
    if not comment:
        return None
    match = _ORDER_ID_RE.search(comment)
    return match.group(1) if match else None


def extract_customer_name(comment: Optional[str], label: str = STORE_NAME) -> Optional[str]:
    if not comment:
        return None

    parts = comment.split("\n")
    if len(parts) >= 3:
        return parts[-1].strip()
    if len(parts) == 1:
        # single-line variant "Ussimo #1736 Malle Tammekivi"
        match = re.search(rf"{re.escape(label)}\s+#\d+\s+(.+)", comment, flags=re.IGNORECASE)
        return match.group(1).strip() if match else comment.strip()
    return comment.strip()
