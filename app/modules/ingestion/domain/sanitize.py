"""
Input Sanitization for Billing Rows

Total conversion functions for untrusted export fields. None of them raise:
a corrupt field degrades to a safe default so one bad cell cannot abort a batch.
"""

import json
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

_DATE_FORMATS = ("%Y-%m-%d", "%Y/%m/%d", "%Y%m%d")

# Exclusive magnitude limits of the fact columns: Numeric(18, 8) for prices and
# costs, Numeric(24, 8) for quantities.
MONEY_LIMIT = 1e10
QUANTITY_LIMIT = 1e16


def to_number(value: Any, limit: Optional[float] = None) -> float:
    """
    Coerce to a finite float; anything non-numeric becomes 0.0, and so does a
    value whose magnitude reaches ``limit``.
    """
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float, Decimal)):
        try:
            number = float(value)
        except (OverflowError, InvalidOperation, ValueError):
            return 0.0
        return _bounded(number, limit)
    if isinstance(value, (str, bytes)):
        text = value.decode("utf-8", "ignore") if isinstance(value, bytes) else value
        text = text.strip().replace(",", "").lstrip("$").strip()
        if not text:
            return 0.0
        try:
            number = float(text)
        except ValueError:
            return 0.0
        return _bounded(number, limit)
    return 0.0


def _bounded(number: float, limit: Optional[float]) -> float:
    if not math.isfinite(number):
        return 0.0
    if limit is not None and abs(number) >= limit:
        return 0.0
    return number


def to_date(value: Any) -> Optional[date]:
    """Coerce to a calendar date (UTC for aware datetimes); unparsable input yields None."""
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            try:
                value = value.astimezone(timezone.utc)
            except (OverflowError, ValueError):
                return None
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        parsed = None
    if parsed is not None:
        return to_date(parsed)

    # Exports frequently carry "2026-01-01T00:00:00.000Z/2026-02-01..." style ranges
    head = text.split("/")[0] if text.count("-") >= 2 and "/" in text else text
    head = head.split("T")[0].split(" ")[0]
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(head, fmt).date()
        except ValueError:
            continue
    return None


def to_text(value: Any, max_length: Optional[int] = None) -> str:
    """Stringify and trim; None becomes the empty string."""
    if value is None:
        return ""
    if isinstance(value, bytes):
        text = value.decode("utf-8", "ignore").strip()
    else:
        try:
            text = str(value).strip()
        except Exception:
            return ""
    if max_length is not None:
        text = text[:max_length]
    return text


def to_optional_text(value: Any, max_length: Optional[int] = None) -> Optional[str]:
    text = to_text(value, max_length)
    return text or None


def parse_tags(value: Any) -> dict[str, str]:
    """
    Parse an optionally JSON-encoded tag blob into a flat string map.

    Accepts a mapping, a JSON object string, or a JSON string that itself encodes
    an object. Blank keys are dropped. Any failure yields an empty map.
    """
    parsed: Any = value
    try:
        for _ in range(2):
            if isinstance(parsed, (str, bytes)):
                text = parsed.decode("utf-8", "ignore") if isinstance(parsed, bytes) else parsed
                text = text.strip()
                if not text:
                    return {}
                parsed = json.loads(text)
        if not isinstance(parsed, Mapping):
            return {}
        tags: dict[str, str] = {}
        for key, tag_value in parsed.items():
            clean_key = to_text(key)
            if not clean_key:
                continue
            if isinstance(tag_value, (dict, list)):
                tags[clean_key] = json.dumps(tag_value, sort_keys=True)
            else:
                tags[clean_key] = to_text(tag_value)
        return tags
    except (ValueError, TypeError, RecursionError):
        return {}


@dataclass(frozen=True)
class SanitizedRow:
    """A billing row after field-level sanitization, before dimension resolution."""
    upload_id: str
    source_row_id: Optional[str]

    # Natural keys and descriptive dimension attributes
    provider: str
    billing_account_id: Optional[str]
    billing_account_name: Optional[str]
    billing_currency: Optional[str]
    service_name: Optional[str]
    service_category: Optional[str]
    region_code: Optional[str]
    region_name: Optional[str]
    availability_zone: Optional[str]
    sku_id: Optional[str]
    sku_price_id: Optional[str]
    pricing_category: Optional[str]
    resource_id: Optional[str]
    resource_name: Optional[str]
    resource_type: Optional[str]
    sub_account_id: Optional[str]
    sub_account_name: Optional[str]
    commitment_discount_id: Optional[str]
    commitment_discount_name: Optional[str]
    commitment_discount_category: Optional[str]
    commitment_discount_type: Optional[str]

    # Fact attributes
    charge_category: Optional[str]
    charge_class: Optional[str]
    charge_description: Optional[str]
    charge_frequency: Optional[str]
    consumed_quantity: float
    consumed_unit: Optional[str]
    pricing_quantity: float
    pricing_unit: Optional[str]
    list_unit_price: float
    contracted_unit_price: float
    effective_unit_price: float
    billed_unit_price: float
    list_cost: float
    contracted_cost: float
    effective_cost: float
    billed_cost: float
    billing_period_start: Optional[date]
    billing_period_end: Optional[date]
    charge_period_start: Optional[date]
    charge_period_end: Optional[date]
    tags: dict[str, str] = field(default_factory=dict)


def _get(raw: Mapping[str, Any], *names: str) -> Any:
    """First non-None value among accepted spellings of a field."""
    for name in names:
        if name in raw and raw[name] is not None:
            return raw[name]
    return None


def sanitize_row(raw: Any, upload_id: Any = None) -> SanitizedRow:
    """
    Sanitize one ingestion input row.

    Field names follow the snake_case ingestion contract; the lower-cased
    concatenated spellings emitted by FOCUS-style mappers (``billedcost``,
    ``servicename``) are accepted as well.
    """
    if hasattr(raw, "model_dump"):
        raw = raw.model_dump()
    if not isinstance(raw, Mapping):
        raw = {}

    def text(*names: str, max_length: Optional[int] = None) -> Optional[str]:
        return to_optional_text(_get(raw, *names), max_length)

    def number(*names: str, limit: float = MONEY_LIMIT) -> float:
        return to_number(_get(raw, *names), limit)

    def day(*names: str) -> Optional[date]:
        return to_date(_get(raw, *names))

    provider = (text("provider", "provider_name", "providername", max_length=32) or "unknown").lower()

    return SanitizedRow(
        upload_id=to_text(upload_id if upload_id is not None else _get(raw, "upload_id", "uploadid"), 64),
        source_row_id=text("source_row_id", "row_id", max_length=128),
        provider=provider,
        billing_account_id=text("billing_account_id", "billingaccountid", max_length=128),
        billing_account_name=text("billing_account_name", "billingaccountname", max_length=255),
        billing_currency=text("billing_currency", "billingcurrency", max_length=8),
        service_name=text("service_name", "servicename", max_length=255),
        service_category=text("service_category", "servicecategory", max_length=128),
        region_code=text("region_code", "regioncode", "region_id", "regionid", max_length=64),
        region_name=text("region_name", "regionname", max_length=128),
        availability_zone=text("availability_zone", "availabilityzone", max_length=64),
        sku_id=text("sku_id", "skuid", max_length=128),
        sku_price_id=text("sku_price_id", "skupriceid", max_length=128),
        pricing_category=text("pricing_category", "pricingcategory", max_length=64),
        resource_id=text("resource_id", "resourceid", max_length=512),
        resource_name=text("resource_name", "resourcename", max_length=512),
        resource_type=text("resource_type", "resourcetype", max_length=128),
        sub_account_id=text("sub_account_id", "subaccountid", max_length=255),
        sub_account_name=text("sub_account_name", "subaccountname", max_length=255),
        commitment_discount_id=text("commitment_discount_id", "commitmentdiscountid", max_length=128),
        commitment_discount_name=text("commitment_discount_name", "commitmentdiscountname", max_length=255),
        commitment_discount_category=text(
            "commitment_discount_category", "commitmentdiscountcategory", max_length=64
        ),
        commitment_discount_type=text("commitment_discount_type", "commitmentdiscounttype", max_length=64),
        charge_category=text("charge_category", "chargecategory", max_length=50),
        charge_class=text("charge_class", "chargeclass", max_length=50),
        charge_description=text("charge_description", "chargedescription"),
        charge_frequency=text("charge_frequency", "chargefrequency", max_length=30),
        consumed_quantity=number("consumed_quantity", "consumedquantity", limit=QUANTITY_LIMIT),
        consumed_unit=text("consumed_unit", "consumedunit", max_length=128),
        pricing_quantity=number("pricing_quantity", "pricingquantity", limit=QUANTITY_LIMIT),
        pricing_unit=text("pricing_unit", "pricingunit", max_length=128),
        list_unit_price=number("list_unit_price", "listunitprice"),
        contracted_unit_price=number("contracted_unit_price", "contractedunitprice"),
        effective_unit_price=number("effective_unit_price", "effectiveunitprice"),
        billed_unit_price=number("billed_unit_price", "billedunitprice"),
        list_cost=number("list_cost", "listcost"),
        contracted_cost=number("contracted_cost", "contractedcost"),
        effective_cost=number("effective_cost", "effectivecost"),
        billed_cost=number("billed_cost", "billedcost"),
        billing_period_start=day("billing_period_start", "billingperiodstart"),
        billing_period_end=day("billing_period_end", "billingperiodend"),
        charge_period_start=day("charge_period_start", "chargeperiodstart"),
        charge_period_end=day("charge_period_end", "chargeperiodend"),
        tags=parse_tags(_get(raw, "tags")),
    )
