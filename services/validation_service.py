"""
Rule-based validation for tenant documents.

A schema maps a field name to an ordered list of rule dicts, for example
``{"email": [required(), email()]}``. Rules for a field run in order and the
first failure ends that field. Schemas can be registered per tenant and looked
up by collection name.
"""
from __future__ import annotations

import functools
import logging
import re
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Dict, List, Optional

from shared.errors import NotFoundError, ValidationFailedError
from services import crm_store

logger = logging.getLogger(__name__)

RULE_TYPES = {
    "required",
    "minLength",
    "maxLength",
    "pattern",
    "email",
    "phone",
    "url",
    "numeric",
    "minValue",
    "maxValue",
    "enum",
    "custom",
    "nested",
    "array",
    "unique",
    "referenceExists",
    "tenantMatch",
    "dateRange",
}

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
PHONE_PATTERN = re.compile(r"^\+?[0-9]{10,15}$")
URL_PATTERN = re.compile(r"^(https?://)([\da-z.-]+)\.([a-z.]{2,6})([/\w .-]*)*/?$", re.IGNORECASE)
URL_OPTIONAL_PROTOCOL_PATTERN = re.compile(r"^(https?://)?([\da-z.-]+)\.([a-z.]{2,6})([/\w .-]*)*/?$", re.IGNORECASE)

Schema = Dict[str, List[Dict[str, Any]]]

_schema_lock = Lock()
_tenant_schemas: Dict[str, Dict[str, Schema]] = {}


def required(message: Optional[str] = None) -> Dict[str, Any]:
    return _rule("required", message)


def min_length(length: int, message: Optional[str] = None) -> Dict[str, Any]:
    return _rule("minLength", message, length=length)


def max_length(length: int, message: Optional[str] = None) -> Dict[str, Any]:
    return _rule("maxLength", message, length=length)


def pattern(regex: str, message: Optional[str] = None) -> Dict[str, Any]:
    return _rule("pattern", message, pattern=regex)


def email(message: Optional[str] = None) -> Dict[str, Any]:
    return _rule("email", message)


def phone(message: Optional[str] = None) -> Dict[str, Any]:
    return _rule("phone", message)


def url(require_protocol: bool = True, message: Optional[str] = None) -> Dict[str, Any]:
    return _rule("url", message, requireProtocol=require_protocol)


def numeric(allow_decimals: bool = False, allow_negative: bool = False, message: Optional[str] = None) -> Dict[str, Any]:
    return _rule("numeric", message, allowDecimals=allow_decimals, allowNegative=allow_negative)


def min_value(value: float, message: Optional[str] = None) -> Dict[str, Any]:
    return _rule("minValue", message, value=value)


def max_value(value: float, message: Optional[str] = None) -> Dict[str, Any]:
    return _rule("maxValue", message, value=value)


def one_of(values: List[Any], message: Optional[str] = None) -> Dict[str, Any]:
    return _rule("enum", message, values=list(values))


def custom(check: Callable[[Any, Dict[str, Any]], bool], message: Optional[str] = None) -> Dict[str, Any]:
    return _rule("custom", message, validate=check)


def nested(schema: Schema, message: Optional[str] = None) -> Dict[str, Any]:
    return _rule("nested", message, schema=schema)


def array(
    item_schema: Optional[Schema] = None,
    *,
    min_items: Optional[int] = None,
    max_items: Optional[int] = None,
    message: Optional[str] = None,
) -> Dict[str, Any]:
    return _rule("array", message, itemSchema=item_schema, minItems=min_items, maxItems=max_items)


def unique(collection: str, field: Optional[str] = None, ignore_case: bool = False, message: Optional[str] = None) -> Dict[str, Any]:
    return _rule("unique", message, collection=collection, field=field, ignoreCase=ignore_case)


def reference_exists(collection: str, field: Optional[str] = None, message: Optional[str] = None) -> Dict[str, Any]:
    return _rule("referenceExists", message, collection=collection, field=field)


def tenant_match(message: Optional[str] = None) -> Dict[str, Any]:
    return _rule("tenantMatch", message)


def date_range(
    *,
    min_date: Optional[datetime] = None,
    max_date: Optional[datetime] = None,
    before_field: Optional[str] = None,
    after_field: Optional[str] = None,
    message: Optional[str] = None,
) -> Dict[str, Any]:
    return _rule("dateRange", message, min=min_date, max=max_date, beforeField=before_field, afterField=after_field)


def _rule(rule_type: str, message: Optional[str], **options: Any) -> Dict[str, Any]:
    rule: Dict[str, Any] = {"type": rule_type}
    if message:
        rule["message"] = message
    rule.update({key: value for key, value in options.items() if value is not None})
    return rule


def _error(field: str, message: str, rule_type: str) -> Dict[str, str]:
    return {"field": field, "message": message, "rule": rule_type}


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = crm_store.parse_iso(value)
        if parsed is None:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def validate(data: Any, schema: Schema, tenant_id: Optional[str] = None) -> Dict[str, Any]:
    """Validate ``data`` and return ``{"isValid": bool, "errors": [...]}``."""
    errors: List[Dict[str, str]] = []
    if tenant_id and isinstance(data, dict) and "tenantId" in data and data.get("tenantId") != tenant_id:
        errors.append(_error("tenantId", "Tenant ID mismatch with current context", "tenantMatch"))
        return {"isValid": False, "errors": errors}

    source = data if isinstance(data, dict) else {}
    for field, rules in schema.items():
        value = source.get(field)
        for rule in rules:
            error = _validate_rule(field, value, rule, source, tenant_id)
            if error:
                errors.append(error)
                break
    return {"isValid": not errors, "errors": errors}


def _validate_rule(
    field: str,
    value: Any,
    rule: Dict[str, Any],
    data: Dict[str, Any],
    tenant_id: Optional[str],
) -> Optional[Dict[str, str]]:
    rule_type = rule.get("type")
    message = rule.get("message")

    if rule_type == "required":
        if _is_empty(value):
            return _error(field, message or "Field is required", rule_type)
        return None

    if _is_empty(value):
        return None

    if rule_type == "minLength":
        if len(str(value)) < int(rule["length"]):
            return _error(field, message or f"Minimum length is {rule['length']}", rule_type)
    elif rule_type == "maxLength":
        if len(str(value)) > int(rule["length"]):
            return _error(field, message or f"Maximum length is {rule['length']}", rule_type)
    elif rule_type == "pattern":
        if not re.search(rule["pattern"], str(value)):
            return _error(field, message or "Invalid format", rule_type)
    elif rule_type == "email":
        if not EMAIL_PATTERN.match(str(value)):
            return _error(field, message or "Invalid email address", rule_type)
    elif rule_type == "phone":
        if not PHONE_PATTERN.match(str(value)):
            return _error(field, message or "Invalid phone number", rule_type)
    elif rule_type == "url":
        matcher = URL_PATTERN if rule.get("requireProtocol", True) else URL_OPTIONAL_PROTOCOL_PATTERN
        if not matcher.match(str(value)):
            return _error(field, message or "Invalid URL", rule_type)
    elif rule_type == "numeric":
        if rule.get("allowDecimals"):
            numeric_pattern = r"^-?\d+(\.\d+)?$" if rule.get("allowNegative") else r"^\d+(\.\d+)?$"
        else:
            numeric_pattern = r"^-?\d+$" if rule.get("allowNegative") else r"^\d+$"
        if isinstance(value, bool) or not re.match(numeric_pattern, str(value)):
            return _error(field, message or "Invalid numeric value", rule_type)
    elif rule_type == "minValue":
        number = _to_number(value)
        if number is None or number < float(rule["value"]):
            return _error(field, message or f"Minimum value is {rule['value']}", rule_type)
    elif rule_type == "maxValue":
        number = _to_number(value)
        if number is None or number > float(rule["value"]):
            return _error(field, message or f"Maximum value is {rule['value']}", rule_type)
    elif rule_type == "enum":
        values = rule.get("values") or []
        if value not in values:
            return _error(field, message or f"Value must be one of: {', '.join(str(v) for v in values)}", rule_type)
    elif rule_type == "custom":
        try:
            if not rule["validate"](value, data):
                return _error(field, message or f"Validation failed for field '{field}'", rule_type)
        except Exception as exc:  # pylint: disable=broad-except
            return _error(field, message or str(exc) or "Custom validation failed", rule_type)
    elif rule_type == "nested":
        if isinstance(value, dict):
            result = validate(value, rule["schema"], tenant_id)
            if not result["isValid"]:
                first = result["errors"][0]
                return _error(f"{field}.{first['field']}", first["message"], first["rule"])
    elif rule_type == "array":
        return _validate_array(field, value, rule, tenant_id)
    elif rule_type == "tenantMatch":
        if tenant_id and value != tenant_id:
            return _error(field, message or "Tenant ID does not match the current context", rule_type)
    elif rule_type == "referenceExists":
        return _validate_reference(field, value, rule, tenant_id)
    elif rule_type == "unique":
        return _validate_unique(field, value, rule, data, tenant_id)
    elif rule_type == "dateRange":
        return _validate_date_range(field, value, rule, data)
    else:
        logger.warning("Unknown validation rule type '%s' on field '%s'", rule_type, field)
    return None


def _validate_array(field: str, value: Any, rule: Dict[str, Any], tenant_id: Optional[str]) -> Optional[Dict[str, str]]:
    if not isinstance(value, list):
        return None
    message = rule.get("message")
    min_items = rule.get("minItems")
    max_items = rule.get("maxItems")
    if min_items is not None and len(value) < min_items:
        return _error(field, message or f"Array must have at least {min_items} items", "array")
    if max_items is not None and len(value) > max_items:
        return _error(field, message or f"Array must have at most {max_items} items", "array")
    item_schema = rule.get("itemSchema")
    if item_schema:
        for index, item in enumerate(value):
            result = validate(item, item_schema, tenant_id)
            if not result["isValid"]:
                first = result["errors"][0]
                return _error(f"{field}[{index}].{first['field']}", first["message"], first["rule"])
    return None


def _validate_reference(field: str, value: Any, rule: Dict[str, Any], tenant_id: Optional[str]) -> Optional[Dict[str, str]]:
    message = rule.get("message")
    collection = rule["collection"]
    ref_field = rule.get("field") or "id"
    try:
        if ref_field == "id":
            referenced = crm_store.get_entity(collection, tenant_id or "", str(value))
            if referenced is None:
                return _error(field, message or f"Referenced {collection} does not exist", "referenceExists")
            if tenant_id and "tenantId" in referenced and referenced.get("tenantId") != tenant_id:
                return _error(field, message or f"Referenced {collection} belongs to a different tenant", "referenceExists")
        else:
            matches = crm_store.query_all(collection, tenant_id or "", filter_fn=lambda item: item.get(ref_field) == value)
            if not matches:
                return _error(field, message or f"No {collection} found with {ref_field} = {value}", "referenceExists")
    except Exception as exc:  # pylint: disable=broad-except
        logger.error("Error checking reference existence for %s: %s", field, exc)
        return _error(field, message or "Error validating reference", "referenceExists")
    return None


def _validate_unique(
    field: str,
    value: Any,
    rule: Dict[str, Any],
    data: Dict[str, Any],
    tenant_id: Optional[str],
) -> Optional[Dict[str, str]]:
    message = rule.get("message")
    collection = rule["collection"]
    check_field = rule.get("field") or field
    ignore_case = bool(rule.get("ignoreCase")) and isinstance(value, str)

    def matches(item: Dict[str, Any]) -> bool:
        candidate = item.get(check_field)
        if ignore_case and isinstance(candidate, str):
            return candidate.lower() == value.lower()
        return candidate == value

    try:
        found = crm_store.query_all(collection, tenant_id or "", filter_fn=matches)
    except Exception as exc:  # pylint: disable=broad-except
        logger.error("Error checking uniqueness for %s: %s", field, exc)
        return _error(field, message or "Error validating uniqueness", "unique")
    own_id = data.get("id")
    if any(not own_id or item.get("id") != own_id for item in found):
        return _error(field, message or f"Value must be unique in {collection}", "unique")
    return None


def _validate_date_range(field: str, value: Any, rule: Dict[str, Any], data: Dict[str, Any]) -> Optional[Dict[str, str]]:
    message = rule.get("message")
    date_value = _to_datetime(value)
    if date_value is None:
        return _error(field, message or "Invalid date format", "dateRange")
    lower = _to_datetime(rule.get("min")) if rule.get("min") else None
    upper = _to_datetime(rule.get("max")) if rule.get("max") else None
    if lower and date_value < lower:
        return _error(field, message or f"Date must be after {crm_store.to_iso(lower)}", "dateRange")
    if upper and date_value > upper:
        return _error(field, message or f"Date must be before {crm_store.to_iso(upper)}", "dateRange")
    before_field = rule.get("beforeField")
    if before_field and data.get(before_field):
        before_date = _to_datetime(data.get(before_field))
        if before_date and date_value >= before_date:
            return _error(field, message or f"Date must be before {before_field}", "dateRange")
    after_field = rule.get("afterField")
    if after_field and data.get(after_field):
        after_date = _to_datetime(data.get(after_field))
        if after_date and date_value <= after_date:
            return _error(field, message or f"Date must be after {after_field}", "dateRange")
    return None


def register_schema(collection: str, schema: Schema, tenant_id: str) -> None:
    tenant = crm_store.require_tenant(tenant_id)
    with _schema_lock:
        _tenant_schemas.setdefault(tenant, {})[collection] = schema


def get_schema(collection: str, tenant_id: str) -> Optional[Schema]:
    with _schema_lock:
        return _tenant_schemas.get(crm_store.tenant_partition(tenant_id), {}).get(collection)


def get_registered_collections(tenant_id: str) -> List[str]:
    with _schema_lock:
        return list(_tenant_schemas.get(crm_store.tenant_partition(tenant_id), {}).keys())


def validate_for_collection(collection: str, data: Any, tenant_id: str) -> Dict[str, Any]:
    schema = get_schema(collection, tenant_id)
    if schema is None:
        raise NotFoundError(f'No schema registered for collection "{collection}" in tenant "{tenant_id}"')
    return validate(data, schema, tenant_id)


def ensure_valid(data: Any, schema: Schema, tenant_id: Optional[str] = None) -> None:
    result = validate(data, schema, tenant_id)
    if not result["isValid"]:
        raise ValidationFailedError(result["errors"])


def validated(schema: Schema, arg_index: int = 0, tenant_kwarg: Optional[str] = None):
    """Validate one positional argument of the wrapped function before calling it."""

    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            target = args[arg_index] if len(args) > arg_index else None
            tenant_id = kwargs.get(tenant_kwarg) if tenant_kwarg else None
            result = validate(target, schema, tenant_id)
            if not result["isValid"]:
                raise ValidationFailedError(
                    result["errors"],
                    message="Validation failed: " + ", ".join(err["message"] for err in result["errors"]),
                )
            return fn(*args, **kwargs)

        return wrapper

    return decorator


def create_default_schema(model_type: str) -> Schema:
    if model_type == "lead":
        return {
            "tenantId": [required()],
            "firstName": [required(), max_length(50)],
            "lastName": [required(), max_length(50)],
            "email": [required(), email()],
            "phone": [phone()],
            "status": [required(), one_of(["new", "contacted", "qualified", "converted", "archived"])],
            "source": [max_length(100)],
        }
    if model_type == "customer":
        return {
            "tenantId": [required()],
            "companyName": [required(), max_length(100)],
            "industry": [max_length(50)],
            "website": [url(require_protocol=True)],
            "contactEmail": [required(), email()],
            "contactPhone": [phone()],
            "status": [required(), one_of(["active", "inactive", "prospect"])],
        }
    if model_type == "task":
        return {
            "tenantId": [required()],
            "title": [required(), max_length(100)],
            "description": [max_length(500)],
            "assignedTo": [required()],
            "dueDate": [required()],
            "priority": [required(), one_of(["low", "medium", "high", "urgent"])],
            "status": [required(), one_of(["todo", "in_progress", "review", "completed", "cancelled"])],
        }
    if model_type == "deal":
        return {
            "tenantId": [required()],
            "name": [required(), max_length(100)],
            "customerId": [required()],
            "value": [required(), numeric(allow_decimals=True, allow_negative=False), min_value(0)],
            "currency": [required(), one_of(["USD", "EUR", "GBP", "CAD", "AUD", "JPY"])],
            "stage": [
                required(),
                one_of(["initial_contact", "qualified", "proposal", "negotiation", "closed_won", "closed_lost"]),
            ],
            "expectedCloseDate": [required()],
            "probability": [numeric(allow_decimals=True, allow_negative=False), min_value(0), max_value(100)],
        }
    return {}


def reset_schemas_for_tests() -> None:
    with _schema_lock:
        _tenant_schemas.clear()
