import uuid

from ..errors import ValidationError


def as_uuid(value, name: str = "id") -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {name}", code="invalid_id")
