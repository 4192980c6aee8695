"""
Three-state patch values.

A PATCH body distinguishes three intents per field: leave it alone (key
omitted), clear it (key present with ``null``), or set it (key present with a
value). ``Optional`` collapses the first two, so patchable fields are carried
as ``Patch`` values instead.
"""

from enum import Enum
from typing import Any, Dict, Generic, Mapping, Optional, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class PatchState(Enum):
    ABSENT = "absent"
    NULL = "null"
    PRESENT = "present"


class Patch(Generic[T]):
    """A field that is absent, explicitly null, or present with a value."""

    __slots__ = ("state", "_value")

    def __init__(self, state: PatchState, value: Optional[T] = None):
        if state is not PatchState.PRESENT and value is not None:
            raise ValueError(f"{state.value} patch cannot carry a value")
        if state is PatchState.PRESENT and value is None:
            raise ValueError("present patch requires a value, use Patch.null()")
        self.state = state
        self._value = value

    @classmethod
    def absent(cls) -> "Patch[Any]":
        return cls(PatchState.ABSENT)

    @classmethod
    def null(cls) -> "Patch[Any]":
        return cls(PatchState.NULL)

    @classmethod
    def of(cls, value: T) -> "Patch[T]":
        return cls(PatchState.PRESENT, value)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], key: str) -> "Patch[Any]":
        """Read ``key`` from a decoded JSON object."""
        if key not in data:
            return cls.absent()
        if data[key] is None:
            return cls.null()
        return cls.of(data[key])

    @property
    def is_absent(self) -> bool:
        return self.state is PatchState.ABSENT

    @property
    def is_null(self) -> bool:
        return self.state is PatchState.NULL

    @property
    def is_present(self) -> bool:
        return self.state is PatchState.PRESENT

    @property
    def value(self) -> T:
        if self.state is not PatchState.PRESENT:
            raise ValueError(f"{self.state.value} patch has no value")
        return self._value

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Patch):
            return NotImplemented
        return self.state is other.state and self._value == other._value

    def __hash__(self) -> int:
        return hash((self.state, self._value))

    def __repr__(self) -> str:
        if self.state is PatchState.PRESENT:
            return f"Patch.of({self._value!r})"
        return f"Patch.{self.state.value}()"


class PatchModel(BaseModel):
    """
    Request body whose fields are read back as ``Patch`` values.

    Declare every field as ``Optional[...] = None``. Pydantic still performs
    the structural validation; ``model_fields_set`` tells an omitted key from
    an explicit ``null``.
    """

    def patch(self, name: str) -> Patch[Any]:
        return Patch.from_mapping(self._set_values(), name)

    def patches(self) -> Dict[str, Patch[Any]]:
        values = self._set_values()
        return {name: Patch.from_mapping(values, name) for name in type(self).model_fields}

    def _set_values(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self.model_fields_set}

    def to_json(self) -> Dict[str, Any]:
        """Serialize keeping absent keys absent and nulls null."""
        return self.model_dump(mode="json", exclude_unset=True)
