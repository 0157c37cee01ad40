import dataclasses
import datetime
import enum

from pydantic import BaseModel as PydanticBaseModel
from pydantic import ConfigDict


class BaseModel(PydanticBaseModel):
    model_config = ConfigDict(frozen=True)


def json_default(o: object) -> str | dict | list:
    """Fallback serializer for structured log fields."""
    if isinstance(o, PydanticBaseModel):
        return o.model_dump(mode="json")
    elif dataclasses.is_dataclass(o) and not isinstance(o, type):
        return dataclasses.asdict(o)
    elif isinstance(o, enum.Enum):
        return o.value
    elif isinstance(o, (set, frozenset)):
        return sorted(str(item) for item in o)
    elif isinstance(o, datetime.datetime):
        return o.isoformat()
    return str(o)
