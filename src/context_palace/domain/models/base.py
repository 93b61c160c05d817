import json
from datetime import UTC, datetime
from enum import Enum
from typing import Any, ClassVar, Self

from pydantic import BaseModel, Field

from .utils import new_id, utc_now


class EntityKind(str, Enum):
    """Registry of node kinds in the conversation graph."""

    MESSAGE = "message"
    TOOL_CALL = "tool_call"
    TOPIC = "topic"


class GraphModel(BaseModel):
    """Base class for all Neo4j entities with discriminated union support."""

    # Fields persisted as JSON strings; Neo4j properties cannot hold maps
    # or lists of maps.
    json_fields: ClassVar[tuple[str, ...]] = ()

    id: str = Field(default_factory=new_id)
    kind: EntityKind
    timestamp: datetime = Field(default_factory=utc_now)

    @classmethod
    def labels(cls) -> list[str]:
        """Neo4j labels derived from the ``kind`` default (``tool_call`` -> ``ToolCall``)."""
        field_info = cls.model_fields.get("kind")
        if field_info is not None and isinstance(field_info.default, EntityKind):
            pascal_case = "".join(part.capitalize() for part in field_info.default.value.split("_"))
            if field_info.default is EntityKind.TOPIC:
                return [pascal_case]
            return ["Entity", pascal_case]
        return ["Entity", cls.__name__]

    def to_neo4j_properties(self) -> dict[str, Any]:
        """Convert to a Neo4j-compatible property dict."""
        props = self.model_dump(mode="python")
        props["kind"] = self.kind.value

        for key, value in list(props.items()):
            if isinstance(value, datetime):
                props[key] = value.timestamp()
            elif isinstance(value, Enum):
                props[key] = value.value

        for key in self.json_fields:
            if key in props:
                props[key] = json.dumps(props[key], default=_json_default)

        return props

    @classmethod
    def from_neo4j_record(cls, record: dict[str, Any]) -> Self:
        """Create instance from a Neo4j node property map."""
        data = dict(record)
        if isinstance(data.get("kind"), str):
            data["kind"] = EntityKind(data["kind"])

        for key in cls.json_fields:
            if isinstance(data.get(key), str):
                data[key] = json.loads(data[key])

        for key, field_info in cls.model_fields.items():
            value = data.get(key)
            if isinstance(value, int | float) and field_info.annotation in (datetime, datetime | None):
                data[key] = datetime.fromtimestamp(value, tz=UTC)

        return cls.model_validate(data)


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")
