"""
Attribute values and resource references.

Resource attributes hold loosely-typed configuration values: strings,
numbers, booleans, null, lists, maps, and references to other resources.
Diffing uses `values_equal` rather than Python's `==`, so that `True` is
never equal to `1` and a reference only equals another reference.
"""

import math
import re
from typing import Any, Iterator, Mapping

from pydantic import BaseModel, ConfigDict, Field


# "${kind.name}" inside a string attribute marks an implicit dependency.
INTERPOLATION = re.compile(r"\$\{([^}.\s]+)\.([^}\s]+)\}")


class ResourceRef(BaseModel):
    """Reference to a resource by identity. Resolved by lookup, never owned."""

    model_config = ConfigDict(frozen=True)

    kind: str = Field(min_length=1)
    name: str = Field(min_length=1)

    @classmethod
    def parse(cls, text: str) -> "ResourceRef":
        """Parse `kind.name`. The first dot separates kind from name."""
        kind, sep, name = text.partition(".")
        if not sep or not kind or not name:
            raise ValueError(f"Invalid resource reference: {text!r}")
        return cls(kind=kind, name=name)

    @property
    def key(self) -> tuple:
        return (self.kind, self.name)

    def __str__(self) -> str:
        return f"{self.kind}.{self.name}"


def ref_sort_key(ref: ResourceRef) -> tuple:
    return ref.key


def normalize_value(value: Any, path: str = "") -> Any:
    """
    Check that a value belongs to the attribute value union and return a
    normalized copy (tuples become lists, mapping keys must be strings).
    """
    if isinstance(value, float) and math.isnan(value):
        raise ValueError(f"NaN is not a valid attribute value at {path or '<root>'}")
    if value is None or isinstance(value, (bool, int, float, str, ResourceRef)):
        return value
    if isinstance(value, Mapping):
        normalized = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValueError(f"Attribute map keys must be strings at {path or '<root>'}")
            normalized[key] = normalize_value(item, f"{path}.{key}" if path else key)
        return normalized
    if isinstance(value, (list, tuple)):
        return [normalize_value(item, f"{path}[{i}]") for i, item in enumerate(value)]
    raise ValueError(
        f"Unsupported attribute value type {type(value).__name__} at {path or '<root>'}"
    )


def values_equal(left: Any, right: Any) -> bool:
    """Structural equality over attribute values."""
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right

    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return left == right

    if isinstance(left, ResourceRef) or isinstance(right, ResourceRef):
        return (
            isinstance(left, ResourceRef)
            and isinstance(right, ResourceRef)
            and left.key == right.key
        )

    if isinstance(left, Mapping) and isinstance(right, Mapping):
        if set(left) != set(right):
            return False
        return all(values_equal(left[k], right[k]) for k in left)

    if isinstance(left, (list, tuple)) and isinstance(right, (list, tuple)):
        if len(left) != len(right):
            return False
        return all(values_equal(a, b) for a, b in zip(left, right))

    if left is None or right is None:
        return left is None and right is None

    if isinstance(left, str) and isinstance(right, str):
        return left == right

    return False


def changed_keys(desired: Mapping[str, Any], observed: Mapping[str, Any]) -> list:
    """Keys whose values differ, including keys present on only one side."""
    keys = set(desired) | set(observed)
    return sorted(
        k for k in keys
        if k not in desired
        or k not in observed
        or not values_equal(desired[k], observed[k])
    )


def find_references(value: Any) -> Iterator[ResourceRef]:
    """Yield every resource reference embedded in a value."""
    if isinstance(value, ResourceRef):
        yield value
    elif isinstance(value, str):
        for match in INTERPOLATION.finditer(value):
            yield ResourceRef(kind=match.group(1), name=match.group(2))
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from find_references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from find_references(item)


def dump_value(value: Any) -> Any:
    """JSON form of a value: references become `${kind.name}` strings."""
    if isinstance(value, ResourceRef):
        return f"${{{value}}}"
    if isinstance(value, Mapping):
        return {key: dump_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [dump_value(item) for item in value]
    return value
