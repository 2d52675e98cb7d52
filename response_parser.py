"""
Response Parser Module
Converts heterogeneous ledger API payloads into normalized Payment and Trade records.

Payment payloads arrive in two shapes, possibly mixed within one page:
- legacy: flat to/destination, amount, asset_type/asset_code/asset_issuer fields
- balance changes: a balance_changes array of debit/credit legs

The shape is detected per record by field presence. Amounts stay decimal
strings; they are only validated here, never converted to float.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Sequence

from constants import CURRENCY_NATIVE, NATIVE_ASSET_CODE, PARSE_ERROR_LOG_SAMPLES
from exceptions import (
    EmptyBalanceChangesError,
    MalformedAmountError,
    MalformedTimestampError,
    MissingFieldsError,
    ParseError,
)
from models import Asset, BalanceChange, Direction, Payment, PaymentShape, Trade
from utils import parse_iso_timestamp

logger = logging.getLogger("CorridorScope.parser")

DEBIT_TAGS = frozenset({"debit", "source", "send", "sent"})
CREDIT_TAGS = frozenset({"credit", "destination", "receive", "received"})


@dataclass
class ParsedPage:
    """Records normalized from one page, plus the ones that were dropped"""
    records: List[Any] = field(default_factory=list)
    errors: List[ParseError] = field(default_factory=list)
    raw_count: int = 0
    last_paging_token: Optional[str] = None

    @property
    def dropped(self) -> int:
        return len(self.errors)


def _check_amount(value: Any, field_name: str, record_id: Optional[str]) -> str:
    """Return the amount as a decimal string, raising MalformedAmountError otherwise"""
    if isinstance(value, bool) or value is None:
        raise MalformedAmountError(f"{field_name} is not a decimal: {value!r}", field_name, record_id)
    if isinstance(value, (int, Decimal)):
        return str(value)
    if not isinstance(value, str):
        raise MalformedAmountError(f"{field_name} must be a decimal string: {value!r}", field_name, record_id)
    text = value.strip()
    try:
        parsed = Decimal(text)
    except InvalidOperation:
        raise MalformedAmountError(f"{field_name} is not a decimal: {value!r}", field_name, record_id)
    if not parsed.is_finite():
        raise MalformedAmountError(f"{field_name} is not finite: {value!r}", field_name, record_id)
    return text


def _asset_from(raw: Dict, prefix: str = "") -> Optional[Asset]:
    asset_type = raw.get(f"{prefix}asset_type")
    code = raw.get(f"{prefix}asset_code")
    issuer = raw.get(f"{prefix}asset_issuer")
    if asset_type is None and code is None and issuer is None:
        nested = raw.get(f"{prefix}asset")
        if isinstance(nested, dict):
            return _asset_from(nested)
        if isinstance(nested, str):
            return _asset_from_canonical(nested)
        return None
    return Asset.from_fields(asset_type, code, issuer)


def _asset_from_canonical(text: str) -> Asset:
    """'native' (or the bare XLM label) or 'CODE:ISSUER' as used in newer payloads"""
    if text in (CURRENCY_NATIVE, NATIVE_ASSET_CODE, ""):
        return Asset.native()
    code, _, issuer = text.partition(":")
    return Asset(code=code, issuer=issuer or None)


def _parse_timestamp(raw: Dict, field_name: str, record_id: Optional[str]):
    value = raw.get(field_name)
    if value is None:
        raise MissingFieldsError(f"Missing {field_name}", field_name, record_id)
    try:
        return parse_iso_timestamp(value)
    except (TypeError, ValueError):
        raise MalformedTimestampError(f"{field_name} is not ISO-8601: {value!r}", field_name, record_id)


def _parse_direction(change: Dict, amount: str) -> Direction:
    for key in ("direction", "role", "type"):
        tag = change.get(key)
        if isinstance(tag, str):
            tag = tag.lower()
            if tag in DEBIT_TAGS:
                return Direction.DEBIT
            if tag in CREDIT_TAGS:
                return Direction.CREDIT
    return Direction.DEBIT if amount.startswith("-") else Direction.CREDIT


def _parse_balance_change(change: Any, record_id: Optional[str]) -> BalanceChange:
    if not isinstance(change, dict):
        raise MissingFieldsError("balance change must be an object", "balance_changes", record_id)
    if "amount" not in change:
        raise MissingFieldsError("balance change without amount", "balance_changes.amount", record_id)
    amount = _check_amount(change["amount"], "balance_changes.amount", record_id)
    asset = _asset_from(change)
    if asset is None:
        raise MissingFieldsError("balance change without asset", "balance_changes.asset", record_id)
    return BalanceChange(
        asset=asset,
        from_account=change.get("from"),
        to_account=change.get("to"),
        amount=amount,
        direction=_parse_direction(change, amount),
    )


def _has_legacy_fields(raw: Dict) -> bool:
    has_destination = any(raw.get(k) for k in ("to", "destination", "account"))
    has_amount = "amount" in raw or "starting_balance" in raw
    has_asset = any(k in raw for k in ("asset_type", "asset_code", "asset")) or "starting_balance" in raw
    return has_destination and has_amount and has_asset


def _parse_success_flag(raw: Dict) -> bool:
    flag = raw.get("transaction_successful")
    if isinstance(flag, bool):
        return flag
    if isinstance(flag, str):
        return flag.lower() != "false"
    return True


def _parse_latency(raw: Dict) -> Optional[float]:
    value = raw.get("latency_ms")
    if value is None or isinstance(value, bool):
        return None
    try:
        latency = float(value)
    except (TypeError, ValueError):
        return None
    return latency if latency >= 0 else None


def parse_payment(raw: Any) -> Payment:
    """
    Normalize one payment payload.

    Raises:
        MissingFieldsError: no usable representation or identifiers
        MalformedAmountError: an amount is not a decimal string
        EmptyBalanceChangesError: balance_changes exists but is empty
        MalformedTimestampError: created_at cannot be parsed
    """
    if not isinstance(raw, dict):
        raise MissingFieldsError(f"payload must be an object, got {type(raw).__name__}")

    record_id = raw.get("id")
    for required in ("id", "paging_token"):
        if raw.get(required) in (None, ""):
            raise MissingFieldsError(f"Missing {required}", required, record_id)
    created_at = _parse_timestamp(raw, "created_at", record_id)

    common = dict(
        id=str(record_id),
        paging_token=str(raw["paging_token"]),
        transaction_hash=raw.get("transaction_hash"),
        source_account=raw.get("source_account") or raw.get("from") or raw.get("funder"),
        created_at=created_at,
        successful=_parse_success_flag(raw),
        latency_ms=_parse_latency(raw),
    )

    if "balance_changes" in raw and raw["balance_changes"] is not None:
        changes = raw["balance_changes"]
        if not isinstance(changes, (list, tuple)):
            raise MissingFieldsError("balance_changes must be an array", "balance_changes", record_id)
        if not changes:
            raise EmptyBalanceChangesError("balance_changes is empty", "balance_changes", record_id)
        legs = tuple(_parse_balance_change(change, record_id) for change in changes)
        return Payment(shape=PaymentShape.BALANCE_CHANGES, balance_changes=legs, **common)

    if _has_legacy_fields(raw):
        if "starting_balance" in raw and "amount" not in raw:
            # create_account funds a new account with the native asset
            amount = _check_amount(raw["starting_balance"], "starting_balance", record_id)
            asset = Asset.native()
        else:
            amount = _check_amount(raw["amount"], "amount", record_id)
            asset = _asset_from(raw) or Asset.native()
        return Payment(
            shape=PaymentShape.LEGACY,
            destination=raw.get("to") or raw.get("destination") or raw.get("account"),
            amount=amount,
            asset=asset,
            source_asset=_asset_from(raw, prefix="source_"),
            **common
        )

    raise MissingFieldsError(
        "Payload has neither legacy destination/amount/asset fields nor balance_changes",
        None,
        record_id
    )


def parse_trade(raw: Any) -> Trade:
    """Normalize one trade payload"""
    if not isinstance(raw, dict):
        raise MissingFieldsError(f"payload must be an object, got {type(raw).__name__}")

    record_id = raw.get("id")
    for required in ("id", "paging_token", "base_amount", "counter_amount"):
        if raw.get(required) in (None, ""):
            raise MissingFieldsError(f"Missing {required}", required, record_id)

    base_asset = _asset_from(raw, prefix="base_")
    counter_asset = _asset_from(raw, prefix="counter_")
    if base_asset is None or counter_asset is None:
        raise MissingFieldsError("Trade without base/counter asset", "asset", record_id)

    price = raw.get("price")
    if isinstance(price, dict) and "n" in price and "d" in price:
        try:
            price = str(Decimal(str(price["n"])) / Decimal(str(price["d"])))
        except (InvalidOperation, ArithmeticError):
            raise MalformedAmountError(f"price is not a ratio: {raw.get('price')!r}", "price", record_id)
    elif price is not None:
        price = _check_amount(price, "price", record_id)

    return Trade(
        id=str(record_id),
        paging_token=str(raw["paging_token"]),
        ledger_close_time=_parse_timestamp(raw, "ledger_close_time", record_id),
        base_asset=base_asset,
        counter_asset=counter_asset,
        base_amount=_check_amount(raw["base_amount"], "base_amount", record_id),
        counter_amount=_check_amount(raw["counter_amount"], "counter_amount", record_id),
        price=price,
        base_is_seller=raw.get("base_is_seller"),
    )


def extract_records(body: Any) -> List[Dict]:
    """
    Pull the record list out of a page body.

    Accepts a HAL envelope (_embedded.records), {"records": [...]}, or a bare list.
    """
    if isinstance(body, list):
        return body
    if isinstance(body, dict):
        embedded = body.get("_embedded")
        if isinstance(embedded, dict) and isinstance(embedded.get("records"), list):
            return embedded["records"]
        if isinstance(body.get("records"), list):
            return body["records"]
    raise MissingFieldsError("Page body has no record list", "records")


class ResponseParser:
    """Parses whole pages, dropping and tallying records that fail to parse"""

    PARSERS = {
        "payments": parse_payment,
        "trades": parse_trade,
    }

    def __init__(self, log_samples: int = PARSE_ERROR_LOG_SAMPLES):
        self.log_samples = log_samples

    def parser_for(self, resource: str):
        kind = resource.rstrip("/").rsplit("/", 1)[-1]
        return self.PARSERS.get(kind, parse_payment)

    def parse_page(self, resource: str, raw_records: Sequence[Any]) -> ParsedPage:
        parse = self.parser_for(resource)
        page = ParsedPage(raw_count=len(raw_records))

        for raw in raw_records:
            token = raw.get("paging_token") if isinstance(raw, dict) else None
            if token not in (None, ""):
                page.last_paging_token = str(token)
            try:
                page.records.append(parse(raw))
            except ParseError as e:
                page.errors.append(e)
                if len(page.errors) <= self.log_samples:
                    logger.warning(f"Dropping unparseable {resource} record: {e}")
                else:
                    logger.debug(f"Dropping unparseable {resource} record: {e}")

        return page

