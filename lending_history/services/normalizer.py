"""
Normalization of raw subgraph records into NormalizedEvent.

Nothing in here raises on bad input: rows that fail the identity or
timestamp checks come back as None, and amounts that cannot be rescaled
are passed through unchanged.
"""
import logging
import re
from dataclasses import asdict, dataclass
from typing import Any, Dict, NamedTuple, Optional, Tuple

from lending_history.services.schema_config import (
    ASSET_NONE,
    ROLE_AMOUNT,
    ROLE_AMOUNT_USD,
    ROLE_BLOCK_NUMBER,
    ROLE_EVENT_LABEL,
    ROLE_ID,
    ROLE_LOG_INDEX,
    ROLE_TIMESTAMP,
    ROLE_TX_HASH,
    SchemaConfig,
)

logger = logging.getLogger(__name__)

# Controlled event kinds
KIND_SUPPLY = "supply"
KIND_WITHDRAW = "withdraw"
KIND_BORROW = "borrow"
KIND_REPAY = "repay"
KIND_LIQUIDATION = "liquidation"
KIND_UNKNOWN = "unknown"

# Lower-cased, separator-free source labels -> event kind
EVENT_KIND_ALIASES = {
    "supply": KIND_SUPPLY,
    "deposit": KIND_SUPPLY,
    "supplie": KIND_SUPPLY,
    "supplycollateral": KIND_SUPPLY,
    "supplybase": KIND_SUPPLY,
    "mint": KIND_SUPPLY,
    "withdraw": KIND_WITHDRAW,
    "withdrawcollateral": KIND_WITHDRAW,
    "withdrawbase": KIND_WITHDRAW,
    "redeem": KIND_WITHDRAW,
    "redeemunderlying": KIND_WITHDRAW,
    "borrow": KIND_BORROW,
    "repay": KIND_REPAY,
    "repayborrow": KIND_REPAY,
    "liquidation": KIND_LIQUIDATION,
    "liquidationcall": KIND_LIQUIDATION,
    "liquidate": KIND_LIQUIDATION,
    "liquidateborrow": KIND_LIQUIDATION,
    "absorb": KIND_LIQUIDATION,
    "absorbcollateral": KIND_LIQUIDATION,
    "absorbdebt": KIND_LIQUIDATION,
    "unknown": KIND_UNKNOWN,
}

_INTEGER_RE = re.compile(r"^[0-9]+$")
_LABEL_NOISE_RE = re.compile(r"[^a-z0-9]")


@dataclass
class NormalizedEvent:
    """Canonical record for one lending-protocol event"""
    transaction_id: str
    log_index: int
    block_number: int
    timestamp_sec: int
    event_kind: str
    asset_address: Optional[str] = None
    asset_symbol: Optional[str] = None
    asset_decimals: Optional[int] = None
    amount_raw: Optional[str] = None        # fixed-point integer string as served
    amount: Optional[str] = None            # amount_raw / 10**asset_decimals
    amount_usd_raw: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ScaledAmount(NamedTuple):
    value: Optional[str]
    scaled: bool  # False when value is the raw input passed through


def is_integer_string(value: str) -> bool:
    return bool(_INTEGER_RE.match(value))


def scale_amount(amount_raw: Optional[str], decimals: Optional[int]) -> ScaledAmount:
    """
    Rescale a fixed-point integer string by 10**decimals.

    Exact digit arithmetic, so "1000000" at 6 decimals is "1" and very large
    values keep every digit. Falls back to the raw value when decimals are
    unknown or the raw value is not a plain non-negative integer.
    """
    if not amount_raw:
        return ScaledAmount(None, False)
    if decimals is None or decimals < 0 or not is_integer_string(amount_raw):
        return ScaledAmount(amount_raw, False)

    digits = amount_raw.lstrip("0") or "0"
    if decimals == 0:
        return ScaledAmount(digits, True)

    padded = digits.rjust(decimals + 1, "0")
    whole = padded[:-decimals]
    fraction = padded[-decimals:].rstrip("0")
    return ScaledAmount(f"{whole}.{fraction}" if fraction else whole, True)


def classify_event_kind(label: Optional[str]) -> str:
    """Map a source label ("LiquidationCall", "borrows", ...) to an event kind"""
    if label is None:
        return KIND_UNKNOWN
    text = str(label).strip()
    if not text:
        return KIND_UNKNOWN
    key = _LABEL_NOISE_RE.sub("", text.lower())
    if key in EVENT_KIND_ALIASES:
        return EVENT_KIND_ALIASES[key]
    # Collection names are plural
    if key.endswith("s") and key[:-1] in EVENT_KIND_ALIASES:
        return EVENT_KIND_ALIASES[key[:-1]]
    return text


def extract_path(raw: Any, path: Optional[Tuple[str, ...]]) -> Any:
    """Follow a field path through nested dicts; list values yield their first entry"""
    if not path:
        return None
    current = raw
    for segment in path:
        if not isinstance(current, dict):
            return None
        current = current.get(segment)
        if isinstance(current, list):
            current = current[0] if current else None
    return current


def _to_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _to_text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value)
    return text if text else None


def normalize_event(raw: Dict[str, Any], config: SchemaConfig) -> Optional[NormalizedEvent]:
    """
    Convert one raw record into a NormalizedEvent using the config's field paths.

    Returns None when the record has no transaction identity or no positive timestamp.
    """
    if not isinstance(raw, dict):
        return None

    transaction_id = _to_text(extract_path(raw, config.path_for(ROLE_TX_HASH)))
    if not transaction_id:
        transaction_id = _to_text(extract_path(raw, config.path_for(ROLE_ID)))
    if not transaction_id:
        logger.debug(f"Dropping {config.query_field} row without transaction id")
        return None

    timestamp = _to_int(extract_path(raw, config.path_for(ROLE_TIMESTAMP)))
    if timestamp is None or timestamp <= 0:
        logger.debug(f"Dropping {config.query_field} row {transaction_id} without valid timestamp")
        return None

    asset_address = asset_symbol = None
    asset_decimals = None
    asset = config.asset_path
    if asset.shape != ASSET_NONE and asset.segments:
        asset_obj = extract_path(raw, asset.segments)
        if isinstance(asset_obj, dict):
            asset_address = _to_text(asset_obj.get(asset.address_field)) if asset.address_field else None
            asset_symbol = _to_text(asset_obj.get(asset.symbol_field)) if asset.symbol_field else None
            asset_decimals = _to_int(asset_obj.get(asset.decimals_field)) if asset.decimals_field else None

    amount_raw = _to_text(extract_path(raw, config.path_for(ROLE_AMOUNT)))
    label = extract_path(raw, config.path_for(ROLE_EVENT_LABEL))

    return NormalizedEvent(
        transaction_id=transaction_id,
        log_index=_to_int(extract_path(raw, config.path_for(ROLE_LOG_INDEX))) or 0,
        block_number=_to_int(extract_path(raw, config.path_for(ROLE_BLOCK_NUMBER))) or 0,
        timestamp_sec=timestamp,
        event_kind=classify_event_kind(label if label not in (None, "") else config.event_label),
        asset_address=asset_address,
        asset_symbol=asset_symbol,
        asset_decimals=asset_decimals,
        amount_raw=amount_raw,
        amount=scale_amount(amount_raw, asset_decimals).value,
        amount_usd_raw=_to_text(extract_path(raw, config.path_for(ROLE_AMOUNT_USD))),
    )
