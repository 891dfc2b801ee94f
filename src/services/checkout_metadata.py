"""Flat metadata encoding for checkout sessions.

Stripe metadata is a bag of string key/value pairs (at most 50 keys, keys up
to 40 characters, values up to 500), so cart lines are spread over
``item_<n>_id``, ``item_<n>_name``, ``item_<n>_quantity`` and
``item_<n>_price`` keys alongside a handful of reserved keys.
"""

import logging
import re
from typing import Any, Mapping

from src.models.order import OrderLineItem
from src.models.owner import Owner

CART_ID_KEY = "cart_id"
ITEM_COUNT_KEY = "item_count"
BUNDLE_PRODUCT_KEY = "bundle_product_id"
CUSTOMER_IP_KEY = "customer_ip"
USER_ID_KEY = "user_id"
SESSION_ID_KEY = "session_id"

RESERVED_KEYS = frozenset(
    {CART_ID_KEY, ITEM_COUNT_KEY, BUNDLE_PRODUCT_KEY, CUSTOMER_IP_KEY, USER_ID_KEY, SESSION_ID_KEY}
)
ITEM_KEY_PATTERN = re.compile(r"^item_\d+_")

ITEM_FIELDS = ("id", "name", "quantity", "price")
MAX_KEY_LENGTH = 40
MAX_VALUE_LENGTH = 500

logger = logging.getLogger(__name__)


class MetadataBudgetExceeded(ValueError):
    """The encoded metadata would not fit the provider's key budget."""

    def __init__(self, needed: int, budget: int) -> None:
        self.needed = needed
        self.budget = budget
        super().__init__(f"Checkout metadata needs {needed} keys, limit is {budget}")


def _item_key(index: int, field: str) -> str:
    return f"item_{index}_{field}"


def is_reserved_key(key: str) -> bool:
    """Check whether a metadata key belongs to the service rather than the caller."""
    return key in RESERVED_KEYS or bool(ITEM_KEY_PATTERN.match(key))


def _to_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)[:MAX_VALUE_LENGTH]


def encode_cart_items_to_flat_metadata(items: list[OrderLineItem]) -> dict[str, str]:
    """Spread line items over ``item_<n>_<field>`` string keys."""
    metadata: dict[str, str] = {}
    for index, item in enumerate(items):
        for field in ITEM_FIELDS:
            metadata[_item_key(index, field)] = _to_value(item[field])
    return metadata


def decode_flat_metadata_to_cart_items(metadata: Mapping[str, Any]) -> list[OrderLineItem]:
    """Rebuild line items from flat metadata.

    Reads ``item_count`` entries when present, otherwise scans until the
    first missing ``item_<n>_id``. Entries without an id or a positive
    quantity are skipped.
    """
    if ITEM_COUNT_KEY in metadata:
        count = int(metadata[ITEM_COUNT_KEY])
    else:
        count = 0
        while _item_key(count, "id") in metadata:
            count += 1

    items: list[OrderLineItem] = []
    for index in range(count):
        product_id = metadata.get(_item_key(index, "id"))
        quantity = int(metadata.get(_item_key(index, "quantity")) or 0)
        if not product_id or quantity <= 0:
            continue
        items.append(
            {
                "id": str(product_id),
                "name": str(metadata.get(_item_key(index, "name")) or ""),
                "quantity": quantity,
                "price": int(metadata.get(_item_key(index, "price")) or 0),
            }
        )
    return items


def build_checkout_metadata(
    cart_id: str,
    items: list[OrderLineItem],
    owner: Owner,
    customer_ip: str | None = None,
    extra: Mapping[str, Any] | None = None,
    reserve_keys: int = 0,
    key_budget: int = 50,
) -> dict[str, str]:
    """Assemble session metadata and check it against the key budget.

    Caller-supplied ``extra`` keys that name a reserved cart, owner, bundle,
    address or item key are dropped, whether or not this checkout sets
    that key itself.

    Args:
        cart_id: Local cart ID.
        items: Cart lines to encode.
        owner: Cart owner; recorded as ``user_id`` or ``session_id``.
        customer_ip: Client address, if known.
        extra: Caller metadata.
        reserve_keys: Keys that will be added later (e.g. bundle product ID).
        key_budget: Maximum number of keys.

    Returns:
        dict[str, str]: Metadata ready for the provider.

    Raises:
        MetadataBudgetExceeded: If the result would exceed ``key_budget``.
        ValueError: If a caller key is longer than the provider allows.
    """
    metadata: dict[str, str] = {}
    for key, value in (extra or {}).items():
        if len(key) > MAX_KEY_LENGTH:
            raise ValueError(f"Metadata key '{key[:MAX_KEY_LENGTH]}...' exceeds {MAX_KEY_LENGTH} characters")
        if is_reserved_key(key):
            logger.warning("Dropping reserved checkout metadata key from caller: %s", key)
            continue
        metadata[key] = _to_value(value)

    metadata[CART_ID_KEY] = str(cart_id)
    metadata[ITEM_COUNT_KEY] = str(len(items))
    metadata[USER_ID_KEY if not owner.is_guest else SESSION_ID_KEY] = owner.value
    if customer_ip:
        metadata[CUSTOMER_IP_KEY] = customer_ip
    metadata.update(encode_cart_items_to_flat_metadata(items))

    needed = len(metadata) + reserve_keys
    if needed > key_budget:
        raise MetadataBudgetExceeded(needed, key_budget)
    return metadata
