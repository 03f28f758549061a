"""Resource — a declared desired-state node."""

from typing import Any, Dict, FrozenSet

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from converge_kernel.models.values import ResourceRef, dump_value, normalize_value


class Resource(BaseModel):
    """A desired-state node. Identity is (kind, name)."""

    model_config = ConfigDict(frozen=True)

    kind: str = Field(min_length=1)               # e.g., "database", "service"
    name: str = Field(min_length=1)
    attributes: Dict[str, Any] = {}               # Value union, see models.values
    depends_on: FrozenSet[ResourceRef] = frozenset()

    @field_validator("attributes", mode="before")
    @classmethod
    def _check_attributes(cls, value):
        if value is None:
            return {}
        return normalize_value(value)

    @field_validator("depends_on", mode="before")
    @classmethod
    def _parse_refs(cls, value):
        if value is None:
            return frozenset()
        refs = []
        for item in value:
            refs.append(ResourceRef.parse(item) if isinstance(item, str) else item)
        return refs

    @field_serializer("attributes", when_used="json")
    def _dump_attributes(self, value):
        return dump_value(value)

    @property
    def ref(self) -> ResourceRef:
        return ResourceRef(kind=self.kind, name=self.name)

    @property
    def key(self) -> tuple:
        return (self.kind, self.name)
