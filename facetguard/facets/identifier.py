"""
Facet Identifiers

A facet is identified by the tuple (scope, name, value?). At the API boundary
it travels as a string:

    "scope:name"          e.g. "reedi-admin:global"
    "scope:name:value"    e.g. "org-division:division:sales"

The string form is parsed once into a FacetIdentifier and the typed tuple is
used everywhere else. Anything after the second colon belongs to the value,
so values may themselves contain colons.
"""

from __future__ import annotations

from dataclasses import dataclass

from facetguard.errors import ValidationError


@dataclass(frozen=True)
class FacetIdentifier:
    """Identity tuple of a facet definition."""
    scope: str
    name: str
    value: str | None = None

    def __post_init__(self) -> None:
        if not self.scope or not self.name:
            raise ValidationError(
                f"Facet scope and name must be non-empty "
                f"(scope={self.scope!r}, name={self.name!r})"
            )
        # "" and None both mean "no value"
        if self.value == "":
            object.__setattr__(self, "value", None)

    def __str__(self) -> str:
        return facet_to_string(self)

    @property
    def storage_value(self) -> str:
        """Value as persisted: the empty string when absent."""
        return self.value or ""


def parse_facet(facet: str | FacetIdentifier) -> FacetIdentifier:
    """
    Parse a facet string into a FacetIdentifier.

    Identifiers are passed through unchanged so callers can accept either form.

    Raises:
        ValidationError: If the string has fewer than two parts or an empty
            scope/name
    """
    if isinstance(facet, FacetIdentifier):
        return facet
    if not isinstance(facet, str):
        raise ValidationError(f"Facet must be a string, got {type(facet).__name__}")

    parts = facet.split(":")
    if len(parts) < 2:
        raise ValidationError(
            f'Invalid facet format: {facet!r}. Expected "scope:name" or "scope:name:value"'
        )

    value = ":".join(parts[2:]) if len(parts) > 2 else None
    return FacetIdentifier(scope=parts[0], name=parts[1], value=value)


def facet_to_string(facet: FacetIdentifier) -> str:
    """Serialize a FacetIdentifier back to its string form."""
    if facet.value:
        return f"{facet.scope}:{facet.name}:{facet.value}"
    return f"{facet.scope}:{facet.name}"
