"""
plan_limits/models/owner.py

Billable owner reference.

Any tenant type can be a billable owner. Storage and lookups always key on the
composite (owner_type, owner_id) pair rather than on a polymorphic foreign key.
"""

from typing import Any
from pydantic import BaseModel, ConfigDict


class OwnerRef(BaseModel):
    """Stable (type-tag, id) pair identifying a billable owner."""
    model_config = ConfigDict(frozen=True)

    owner_type: str
    owner_id: str

    def __str__(self) -> str:
        return f"{self.owner_type}:{self.owner_id}"


def as_owner_ref(owner: Any) -> OwnerRef:
    """
    Coerce an owner into an OwnerRef.

    Accepts:
    - OwnerRef instances (returned as-is)
    - (owner_type, owner_id) tuples
    - objects exposing an `owner_ref` attribute or method
    - objects exposing an `id` (type tag is the class name)
    """
    if isinstance(owner, OwnerRef):
        return owner
    if isinstance(owner, tuple) and len(owner) == 2:
        return OwnerRef(owner_type=str(owner[0]), owner_id=str(owner[1]))

    ref = getattr(owner, "owner_ref", None)
    if ref is not None:
        ref = ref() if callable(ref) else ref
        return as_owner_ref(ref)

    owner_id = getattr(owner, "id", None)
    if owner_id is None:
        raise TypeError(f"Cannot derive an owner reference from {type(owner).__name__}")
    return OwnerRef(owner_type=type(owner).__name__, owner_id=str(owner_id))
