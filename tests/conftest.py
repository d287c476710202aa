"""Pytest configuration and fixtures for facetguard tests."""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from facetguard.facets import FacetService, seed_default_facets
from facetguard.hierarchy import HierarchyResolver
from facetguard.permissions import Authentication
from facetguard.storage import EntityRecord, StorageBundle, create_memory_storage


class MutableClock:
    """Controllable time source; call it to get "now"."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@pytest.fixture
def clock():
    """Clock pinned to 2025-01-01 UTC."""
    return MutableClock(datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc))


@pytest_asyncio.fixture
async def storage():
    """In-memory storage bundle."""
    bundle = await create_memory_storage()
    yield bundle
    await bundle.close()


@pytest.fixture
def facets(storage, clock):
    """Facet service over in-memory storage, without any vocabulary."""
    return FacetService(storage.facets, clock=clock)


@pytest_asyncio.fixture
async def seeded_facets(facets):
    """Facet service with the default vocabulary declared."""
    await seed_default_facets(facets)
    return facets


@pytest.fixture
def hierarchy(storage, clock):
    """Hierarchy resolver over in-memory storage."""
    return HierarchyResolver(storage.entities, clock=clock)


async def add_entities(storage: StorageBundle, **managers) -> None:
    """Create entities; keyword name is the entity, value its line manager (or None)."""
    for entity_id, manager_id in managers.items():
        await storage.entities.upsert_entity(
            EntityRecord(entity_id=entity_id, line_manager_id=manager_id)
        )


def auth(user_id: str | None, **context) -> Authentication:
    """Authentication for a user id (None for anonymous)."""
    return Authentication(user_id=user_id, **context)
