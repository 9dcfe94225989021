"""Strict Pydantic base models shared across mcpbridge.

Every configuration and wire model in the package derives from one of
these so that validation behaves the same everywhere.
"""

from pydantic import BaseModel, ConfigDict


class StrictBaseModel(BaseModel):
    """Base model with strict validation.

    It enforces:
    - strict=True: Type coercion is disabled, inputs must match exact types
    - extra="forbid": No additional fields allowed, prevents config drift
    - validate_assignment=True: Validation on all field assignments
    - frozen=True: Immutable by default, preventing accidental mutations
    """

    model_config = ConfigDict(
        strict=True,              # No type coercion - fail fast on wrong types
        extra="forbid",           # No extra fields - fail fast on unknown config
        validate_assignment=True, # Always validate - fail fast on invalid updates
        frozen=True,              # Immutable by default - explicit mutability required
        validate_default=True,
        use_enum_values=False,    # Preserve enum objects for their methods
        arbitrary_types_allowed=False,
    )


__all__ = [
    "StrictBaseModel",
]
