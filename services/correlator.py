from __future__ import annotations

import logging
from typing import List, Optional

from services.order_store import OrderStore
from services.orders import Order, parse_timestamp
from services.whatsapp import digits_only

logger = logging.getLogger(__name__)

# Local number length; anything before it is treated as country code.
SUFFIX_DIGITS = 10


def phone_match_key(phone: Optional[str]) -> str:
    """Last 10 digits of ``phone``, or all of them when shorter."""
    return digits_only(phone)[-SUFFIX_DIGITS:]


class OrderCorrelator:
    """
    Finds the open order an inbound WhatsApp message belongs to.

    Linear scan over every open order per message. Fine for a single shop's
    few hundred open orders; there is no phone index.
    """

    def __init__(self, store: OrderStore):
        self.store = store

    def find_open_order_by_phone(self, raw_phone: str) -> Optional[Order]:
        key = phone_match_key(raw_phone)
        if not key:
            logger.info("Inbound phone %r has no digits; nothing to match", raw_phone)
            return None

        matches: List[Order] = [
            order
            for order in self.store.list_open_orders()
            if phone_match_key(order.phone) == key
        ]
        if not matches:
            logger.info("No open order for phone ending %s", key[-4:])
            return None

        best = matches[0]
        for order in matches[1:]:
            # Strictly newer wins; on equal timestamps the earlier order number stays.
            if parse_timestamp(order.created_at) > parse_timestamp(best.created_at):
                best = order

        if len(matches) > 1:
            logger.warning(
                "Phone ending %s matches %d open orders %s; routing to most recent #%s",
                key[-4:],
                len(matches),
                [o.order_number for o in matches],
                best.order_number,
            )
        else:
            logger.info("Matched phone ending %s to order %s (#%s)", key[-4:], best.id, best.order_number)
        return best
