from typing import Any, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from legalmarket.errors import ValidationError

SchemaT = TypeVar("SchemaT", bound=BaseModel)


def parse(schema: Type[SchemaT], **data: Any) -> SchemaT:
    """Build a schema instance, reporting bad input as the core's ValidationError."""
    try:
        return schema(**data)
    except PydanticValidationError as exc:
        errors = exc.errors()
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or None
        raise ValidationError(
            first.get("msg", "Invalid input"),
            field=field,
            errors=[{"field": ".".join(str(p) for p in e.get("loc", ())), "message": e.get("msg")} for e in errors],
        ) from exc
