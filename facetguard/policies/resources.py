"""
Resource snapshots handed to policies by the route layer.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping


class Visibility(str, Enum):
    """Who a resource is visible to before any elevated rule applies."""
    PUBLIC = "PUBLIC"
    FRIENDS_ONLY = "FRIENDS_ONLY"
    PRIVATE = "PRIVATE"


@dataclass
class ResourceSnapshot:
    """
    The fields of a resource that policies read.

    For user-targeted operations the resource is the target user itself:
    resource_id and owner_id are both the user's id.
    """
    resource_id: str | None
    owner_id: str | None
    visibility: Visibility = Visibility.PRIVATE
    published: bool = True
    attributes: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.visibility = Visibility(self.visibility)

    @property
    def is_public(self) -> bool:
        return self.visibility == Visibility.PUBLIC and self.published

    @classmethod
    def for_user(cls, user_id: str, is_private: bool = True) -> ResourceSnapshot:
        return cls(
            resource_id=user_id,
            owner_id=user_id,
            visibility=Visibility.PRIVATE if is_private else Visibility.PUBLIC,
        )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> ResourceSnapshot:
        """
        Build from a loosely shaped record, accepting the common aliases
        (id, author_id / authorId / owner_id, visibility, publication_status).
        """
        owner_id = data.get("owner_id", data.get("author_id", data.get("authorId")))
        status = data.get("publication_status", data.get("publicationStatus", "PUBLIC"))
        return cls(
            resource_id=data.get("id", data.get("resource_id")),
            owner_id=owner_id,
            visibility=data.get("visibility", Visibility.PRIVATE),
            published=status == "PUBLIC",
        )
