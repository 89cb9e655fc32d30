"""
Request validation on top of the pydantic models in ``schemas``.

``prepare`` is the handler pipeline: shape, identifier format, referenced
users, then the model itself. ``check_document`` validates an already
normalized document and is what the store calls before it writes.
"""
from typing import Any, Dict, List, Optional, Set, Type

from bson import ObjectId
from pydantic import ValidationError
from pydantic_core import PydanticUndefined

from errors import InvalidIdentifier, NotFound, ValidationFailed
from schemas import Document

TEMPLATES = {
    "missing": "{label} is required",
    "string_type": "{label} must be a string",
    "string_too_short": "{label} must be at least {min_length} characters",
    "string_too_long": "{label} cannot be more than {max_length} characters",
    "greater_than": "{label} must be greater than {gt}",
    "greater_than_equal": "{label} must be at least {ge}",
    "less_than_equal": "{label} cannot exceed {le}",
    "int_from_float": "{label} must be a whole number",
    "number_too_large": "{label} is too large",
    "int_parsing_size": "{label} is too large",
    "enum": "{label} must be one of: {expected}",
    "object_id": "Invalid {label} format",
}

NUMBER_ERRORS = ("number_type", "finite_number", "int_type", "int_parsing", "float_type", "float_parsing")


def is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def is_object_id(value: Any) -> bool:
    return isinstance(value, ObjectId) or (isinstance(value, str) and ObjectId.is_valid(value))


def _num(value) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def describe(model: Type[Document], error: Dict[str, Any]) -> str:
    """Render one pydantic error in the API's wording."""
    loc = error.get("loc") or ()
    if not loc:
        return error["msg"]
    field, kind = str(loc[0]), error["type"]
    override = model.message_for(field, kind)
    if override:
        return override
    label = model.label(field)
    ctx = {k: _num(v) if isinstance(v, (int, float)) else v for k, v in (error.get("ctx") or {}).items()}
    if kind == "greater_than_equal" and ctx.get("ge") == "0":
        return f"{label} cannot be negative"
    if kind in NUMBER_ERRORS:
        return f"{label} must be a number"
    if kind.startswith(("datetime", "date_")):
        return f"{label} must be a valid date"
    template = TEMPLATES.get(kind)
    if template is None:
        return f"{label} has an invalid value"
    return template.format(label=label, **ctx)


def error_messages(model: Type[Document], exc: ValidationError) -> List[str]:
    messages = []
    for error in exc.errors():
        message = describe(model, error)
        if message not in messages:
            messages.append(message)
    return messages


def check_document(model: Type[Document], document: Dict[str, Any],
                   written: Optional[Set[str]] = None) -> Dict[str, Any]:
    """Validate ``document`` against ``model`` and return its stored form.

    ``written`` is the set of fields an update touches and limits which
    cross-field rules run; ``None`` means the whole document is being created.
    """
    try:
        instance = model.model_validate(document, context={"written": written})
    except ValidationError as e:
        raise ValidationFailed(error_messages(model, e))
    return instance.model_dump(exclude_none=True)


def missing_fields(model: Type[Document], payload: Dict[str, Any], partial: bool = False) -> List[str]:
    required = [name for name, info in model.model_fields.items() if info.is_required()]
    if partial:
        return [name for name in required if name in payload and is_blank(payload[name])]
    return [name for name in required if is_blank(payload.get(name))]


def default_of(model: Type[Document], field: str) -> Any:
    value = model.model_fields[field].get_default(call_default_factory=True)
    return None if value is PydanticUndefined else value


def normalize(model: Type[Document], payload: Dict[str, Any], partial: bool = False) -> Dict[str, Any]:
    """Drop blank values before validation.

    On create a blank field is left out so its default applies; on update it
    is reset to its default, or to None which unsets it.
    """
    document = {}
    for name, value in payload.items():
        if is_blank(value):
            if partial:
                document[name] = default_of(model, name)
            continue
        document[name] = value
    return document


def check_reference_format(model: Type[Document], field: str, value: Any) -> None:
    if not is_object_id(value):
        raise InvalidIdentifier(
            model.message_for(field, "object_id") or f"Invalid {model.label(field)} format"
        )


def check_references(store, model: Type[Document], payload: Dict[str, Any]) -> None:
    fields = [f for f in model.references if not is_blank(payload.get(f))]
    for field in fields:
        check_reference_format(model, field, payload[field])
    for field in fields:
        if store.find_by_id("user", payload[field]) is None:
            raise NotFound(f"{model.references[field]} not found")


def prepare(store, model: Type[Document], body: Dict[str, Any],
            existing: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Validate a create (``existing`` is None) or partial update body.

    Returns the normalized fields to write; on update a None value means the
    field is unset. Raises ``ValidationFailed``, ``InvalidIdentifier`` or
    ``NotFound``.
    """
    partial = existing is not None
    payload = {name: body[name] for name in model.model_fields if name in body}

    missing = missing_fields(model, payload, partial)
    if missing:
        raise ValidationFailed("Missing required fields: " + ", ".join(missing))

    check_references(store, model, payload)

    document = normalize(model, payload, partial)
    if not partial:
        return check_document(model, document)

    merged = {k: v for k, v in {**existing, **document}.items() if v is not None}
    validated = check_document(model, merged, written=set(document))
    return {name: validated.get(name) for name in document}
