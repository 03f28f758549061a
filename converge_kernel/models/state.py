"""Observed State — last-known live configuration of the managed system."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, field_serializer

from converge_kernel.models.values import ResourceRef, dump_value


class ObservedResource(BaseModel):
    """A single resource as last applied or read back from the provider."""

    kind: str
    name: str
    attributes: Dict[str, Any] = {}          # Compared against desired attributes
    outputs: Dict[str, Any] = {}             # Provider-computed, never diffed
    depends_on: List[ResourceRef] = []       # Explicit + implicit edges at apply time
    revision: int = 1
    updated_at: datetime

    @field_serializer("attributes", when_used="json")
    def _dump_attributes(self, value):
        return dump_value(value)

    @property
    def ref(self) -> ResourceRef:
        return ResourceRef(kind=self.kind, name=self.name)

    @property
    def key(self) -> tuple:
        return (self.kind, self.name)


class ObservedState(BaseModel):
    """Versioned snapshot of observed resources, keyed by `kind.name`."""

    resources: Dict[str, ObservedResource] = {}
    version: int = 0

    def get(self, ref: ResourceRef) -> Optional[ObservedResource]:
        return self.resources.get(str(ref))

    def __contains__(self, ref: ResourceRef) -> bool:
        return str(ref) in self.resources

    def refs(self) -> List[ResourceRef]:
        return [r.ref for r in self.resources.values()]
