from __future__ import annotations
from datetime import date

from labstock.time_utils import parse_iso_date

from dataclasses import dataclass
from typing import Any

from .services.stock_errors import InvalidQuantityError
from .services.stock_requests import AddStock, AdjustStock, MoveStock, RemoveStock


# Maximum unit cost: 999,999,999 cents
MAX_UNIT_COST_CENTS = 999_999_999

KIND_INT = "int"
KIND_QUANTITY = "quantity"
KIND_STRING = "string"
KIND_TEXT = "text"
KIND_DATE = "date"


class ValidationError(ValueError):
    """400-level input problem."""


@dataclass(frozen=True)
class FieldRule:
    kind: str
    max_length: int | None = None


@dataclass(frozen=True)
class PayloadPolicy:
    """
    Central policy layer for one request body:
    - fields: what clients are allowed to send, and how each is coerced
    - required: fields that must be present and non-null
    """
    fields: dict[str, FieldRule]
    required: frozenset[str] = frozenset()


_COMMON_FIELDS = {
    "reason": FieldRule(KIND_STRING, 255),
    "notes": FieldRule(KIND_TEXT, 2000),
    "expected_version": FieldRule(KIND_INT),
}

ADD_POLICY = PayloadPolicy(
    fields={
        "quantity": FieldRule(KIND_QUANTITY),
        "unit_cost_cents": FieldRule(KIND_INT),
        "supplier": FieldRule(KIND_STRING, 255),
        "batch_number": FieldRule(KIND_STRING, 64),
        "expiry_date": FieldRule(KIND_DATE),
        **_COMMON_FIELDS,
    },
    required=frozenset({"quantity"}),
)

REMOVE_POLICY = PayloadPolicy(
    fields={"quantity": FieldRule(KIND_QUANTITY), **_COMMON_FIELDS},
    required=frozenset({"quantity"}),
)

MOVE_POLICY = PayloadPolicy(
    fields={
        "quantity": FieldRule(KIND_QUANTITY),
        "target_lab_id": FieldRule(KIND_INT),
        "source_lab_id": FieldRule(KIND_INT),
        **_COMMON_FIELDS,
    },
    required=frozenset({"quantity", "target_lab_id"}),
)

ADJUST_POLICY = PayloadPolicy(
    fields={"new_quantity": FieldRule(KIND_QUANTITY), **_COMMON_FIELDS},
    required=frozenset({"new_quantity"}),
)


def coerce_int(name: str, value: Any) -> int:
    """Strict integer coercion: rejects bools, floats, decimals and scientific notation."""
    # Already an int (but not bool which is a subclass of int)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    # String input - must be plain digits (with optional leading minus)
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{name} must be an integer")
        if 'e' in stripped.lower():
            raise ValidationError(f"{name} must be a plain integer (scientific notation not allowed)")
        if '.' in stripped:
            raise ValidationError(f"{name} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{name} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{name} must be an integer, not a decimal")
    raise ValidationError(f"{name} must be an integer")


def _coerce_value(name: str, rule: FieldRule, value: Any):
    if value is None:
        return None

    if rule.kind == KIND_INT:
        return coerce_int(name, value)

    # Quantity problems keep the ledger's own error kind
    if rule.kind == KIND_QUANTITY:
        try:
            return coerce_int(name, value)
        except ValidationError as exc:
            raise InvalidQuantityError(str(exc), field=name, value=value) from exc

    if rule.kind == KIND_DATE:
        if isinstance(value, date):
            return value
        if isinstance(value, str):
            try:
                parsed = parse_iso_date(value)
            except ValueError:
                raise ValidationError(f"{name} must be an ISO-8601 date (YYYY-MM-DD)")
            if parsed is None:
                raise ValidationError(f"{name} must be an ISO-8601 date (YYYY-MM-DD)")
            return parsed
        raise ValidationError(f"{name} must be a date")

    # Strings / Text
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string")
    cleaned = value.strip()
    if rule.max_length is not None and len(cleaned) > rule.max_length:
        raise ValidationError(f"{name} exceeds max length {rule.max_length}")
    return cleaned or None


def validate_payload(*, payload: Any, policy: PayloadPolicy) -> dict:
    """
    Validates + normalizes an incoming JSON body against a PayloadPolicy.

    Unknown fields are rejected. Blank strings normalize to None, and a
    required field that ends up None counts as missing.
    Returns a cleaned dict holding only the fields that were sent.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    for key in payload.keys():
        if key not in policy.fields:
            raise ValidationError(f"Field not allowed: {key}")

    cleaned = {}
    for key, value in payload.items():
        cleaned[key] = _coerce_value(key, policy.fields[key], value)

    missing = sorted(f for f in policy.required if cleaned.get(f) is None)
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cost = cleaned.get("unit_cost_cents")
    if cost is not None and cost > MAX_UNIT_COST_CENTS:
        raise ValidationError(f"unit_cost_cents cannot exceed {MAX_UNIT_COST_CENTS}")

    return cleaned


def build_add_request(item_id: int, payload: Any, actor_id: str) -> AddStock:
    data = validate_payload(payload=payload, policy=ADD_POLICY)
    return AddStock(item_id=item_id, actor_id=actor_id, **data)


def build_remove_request(item_id: int, payload: Any, actor_id: str) -> RemoveStock:
    data = validate_payload(payload=payload, policy=REMOVE_POLICY)
    return RemoveStock(item_id=item_id, actor_id=actor_id, **data)


def build_move_request(item_id: int, payload: Any, actor_id: str) -> MoveStock:
    data = validate_payload(payload=payload, policy=MOVE_POLICY)
    return MoveStock(item_id=item_id, actor_id=actor_id, **data)


def build_adjust_request(item_id: int, payload: Any, actor_id: str) -> AdjustStock:
    data = validate_payload(payload=payload, policy=ADJUST_POLICY)
    return AdjustStock(item_id=item_id, actor_id=actor_id, **data)


def parse_query_int(args, name: str, default: int | None = None) -> int | None:
    """Optional integer query-string parameter."""
    raw = args.get(name)
    if raw is None or raw == "":
        return default
    return coerce_int(name, raw)


def parse_query_bool(args, name: str, default: bool) -> bool:
    raw = args.get(name)
    if raw is None or raw == "":
        return default
    lowered = raw.strip().lower()
    if lowered in ("1", "true", "yes"):
        return True
    if lowered in ("0", "false", "no"):
        return False
    raise ValidationError(f"{name} must be true or false")
