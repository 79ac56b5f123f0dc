"""
Compact cart encoding for gateway metadata

Stripe metadata is a flat map of short strings (50 keys, 500 chars per
value), so the cart is stored as

    items_compact_1 = "P1|2|500|S1;P2|1|1250|S2"
    items_compact_2 = "P3|4|99|S1"

Lines are packed greedily and never split across fields. Decoding
concatenates the fields in numeric order of their suffix
(items_compact_10 comes after items_compact_9).
"""
import logging
import re
from typing import Dict, List, Mapping, Optional

from checkout_engine.core.exceptions import CheckoutMetadataTooLargeError, InvalidItemIdentifierError
from checkout_engine.services.cart import CartLine

logger = logging.getLogger(__name__)

ITEM_FIELD_SEPARATOR = "|"
ITEM_SEPARATOR = ";"
ITEMS_FIELD_PREFIX = "items_compact_"
DEFAULT_CHUNK_LENGTH = 450

_ITEMS_FIELD_RE = re.compile(rf"^{ITEMS_FIELD_PREFIX}(\d+)$")


def _check_identifier(field: str, value: str) -> str:
    if ITEM_FIELD_SEPARATOR in value or ITEM_SEPARATOR in value:
        raise InvalidItemIdentifierError(field, value)
    return value


def encode_cart_line(line: CartLine) -> str:
    """
    Raises:
        InvalidItemIdentifierError: an id contains "|" or ";"
    """
    return ITEM_FIELD_SEPARATOR.join([
        _check_identifier("product_id", line.product_id),
        str(line.quantity),
        str(line.unit_price_cents),
        _check_identifier("seller_id", line.seller_id or ""),
    ])


def pack_item_chunks(encoded_lines: List[str], max_length: int = DEFAULT_CHUNK_LENGTH) -> List[str]:
    """
    Greedily pack encoded lines into chunks no longer than max_length.

    Raises:
        CheckoutMetadataTooLargeError: a single line is longer than max_length
    """
    chunks: List[str] = []
    current = ""

    for encoded in encoded_lines:
        if len(encoded) > max_length:
            raise CheckoutMetadataTooLargeError(
                f"Cart line is too long to store in checkout metadata ({len(encoded)} > {max_length})",
                details={"line": encoded[:50]},
            )

        if not current:
            current = encoded
        elif len(current) + len(ITEM_SEPARATOR) + len(encoded) <= max_length:
            current = f"{current}{ITEM_SEPARATOR}{encoded}"
        else:
            chunks.append(current)
            current = encoded

    if current:
        chunks.append(current)
    return chunks


def encode_items_compact(cart_lines: List[CartLine], max_length: int = DEFAULT_CHUNK_LENGTH) -> Dict[str, str]:
    chunks = pack_item_chunks([encode_cart_line(line) for line in cart_lines], max_length)
    return {f"{ITEMS_FIELD_PREFIX}{i}": chunk for i, chunk in enumerate(chunks, start=1)}


def _decode_line(entry: str) -> Optional[CartLine]:
    parts = entry.split(ITEM_FIELD_SEPARATOR)
    if len(parts) != 4 or not parts[0]:
        return None
    try:
        return CartLine(
            product_id=parts[0],
            quantity=int(parts[1]),
            unit_price_cents=int(parts[2]),
            seller_id=parts[3] or None,
        )
    except ValueError:
        return None


def decode_items_compact(metadata: Mapping[str, str]) -> List[CartLine]:
    """Rebuild cart lines from items_compact_N fields. Malformed entries are skipped."""
    numbered = []
    for key, value in metadata.items():
        match = _ITEMS_FIELD_RE.match(key)
        if match:
            numbered.append((int(match.group(1)), value or ""))

    lines: List[CartLine] = []
    for _, chunk in sorted(numbered):
        for entry in chunk.split(ITEM_SEPARATOR):
            if not entry:
                continue
            line = _decode_line(entry)
            if line is None:
                logger.warning(f"Skipping malformed compact item: {entry[:50]!r}")
                continue
            lines.append(line)
    return lines


def truncate(value: Optional[str], max_length: int) -> str:
    if not value:
        return ""
    return value[:max_length]
