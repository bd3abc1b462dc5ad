"""
Indexer Event Decoding
======================

Typed decoding of AssetSupplied / AssetWithdrawn rows returned by the
indexer. Each event kind accepts a small fixed set of known schemas:

  AssetSupplied   current:  amount, shares
                  legacy:   supply_amount, supply_shares
  AssetWithdrawn  current:  amount, shares
                  legacy:   withdraw_amount, withdraw_shares

A row that matches none of them raises EventSchemaError. Amounts and
shares arrive as decimal strings (u64 on chain) and are kept as int.
"""

from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Tuple

SUPPLY = "supply"
WITHDRAW = "withdraw"

# (amount field, shares field) per kind, in order of preference
_SCHEMAS: dict[str, Tuple[Tuple[str, str], ...]] = {
    SUPPLY: (("amount", "shares"), ("supply_amount", "supply_shares")),
    WITHDRAW: (("amount", "shares"), ("withdraw_amount", "withdraw_shares")),
}

TIMESTAMP_FIELD = "checkpoint_timestamp_ms"


class EventSchemaError(ValueError):
    """Indexer row does not match any known event schema."""


@dataclass(frozen=True)
class LedgerEvent:
    """One deposit or withdrawal, in base-asset smallest units."""

    kind: str
    shares: int
    amount: int
    timestamp_ms: int
    digest: str = ""


def _to_u64(value: Any, field_name: str) -> int:
    if isinstance(value, bool):
        raise EventSchemaError(f"{field_name}: expected integer, got bool")
    try:
        number = int(str(value), 10)
    except (TypeError, ValueError):
        raise EventSchemaError(f"{field_name}: not an integer: {value!r}") from None
    if number < 0:
        raise EventSchemaError(f"{field_name}: negative value {number}")
    return number


def decode_event(row: Mapping[str, Any], kind: str) -> LedgerEvent:
    """Decode one indexer row of the given kind."""
    if kind not in _SCHEMAS:
        raise ValueError(f"Unknown event kind: {kind}")
    if not isinstance(row, Mapping):
        raise EventSchemaError(f"{kind} event is not an object: {type(row).__name__}")

    for amount_field, shares_field in _SCHEMAS[kind]:
        if amount_field in row and shares_field in row:
            break
    else:
        raise EventSchemaError(
            f"Unrecognized {kind} event shape: fields {sorted(row.keys())}"
        )

    if TIMESTAMP_FIELD not in row:
        raise EventSchemaError(f"{kind} event missing {TIMESTAMP_FIELD}")

    return LedgerEvent(
        kind=kind,
        shares=_to_u64(row[shares_field], shares_field),
        amount=_to_u64(row[amount_field], amount_field),
        timestamp_ms=_to_u64(row[TIMESTAMP_FIELD], TIMESTAMP_FIELD),
        digest=str(row.get("digest") or row.get("event_digest") or ""),
    )


def decode_events(rows: Iterable[Mapping[str, Any]], kind: str) -> List[LedgerEvent]:
    return [decode_event(row, kind) for row in rows]


def in_event_order(events: Iterable[LedgerEvent]) -> List[LedgerEvent]:
    """Events sorted by checkpoint timestamp; ties keep delivery order."""
    return sorted(events, key=lambda e: e.timestamp_ms)
