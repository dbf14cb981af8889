import uuid
from dataclasses import dataclass

from errors import ValidationError


@dataclass(frozen=True)
class RecordId:
    """Opaque record identifier; stored as 32 lowercase hex characters."""

    value: str

    @classmethod
    def new(cls) -> "RecordId":
        return cls(uuid.uuid4().hex)

    @classmethod
    def parse(cls, raw: object, entity: str = "record") -> "RecordId":
        try:
            return cls(uuid.UUID(str(raw).strip()).hex)
        except ValueError as exc:
            raise ValidationError(f"Invalid {entity} ID", "invalid_id") from exc

    def __str__(self) -> str:
        return self.value
