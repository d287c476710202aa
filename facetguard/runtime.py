"""
Runtime Wiring

Builds every engine component from EngineSettings and tears them down in
reverse order.

Usage:
    access = await create_access_control()
    decision = await access.check(
        lambda: access.posts.can_read(auth, post),
        auth,
        "post",
        fallback_operation="post-read",
    )
    await access.close()

Run `python -m facetguard.runtime` for a small in-memory walkthrough.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from dotenv import load_dotenv

from facetguard.audit import AuditSink, AuditPublisher, create_audit_publisher
from facetguard.clock import Clock, utcnow
from facetguard.config import EngineSettings, settings_from_env
from facetguard.facets import FacetService, seed_default_facets
from facetguard.hierarchy import HierarchyResolver
from facetguard.permissions import Authentication, Decision, PermissionEngine, safe_check
from facetguard.permissions.engine import CheckFn, FALLBACK_OPERATION
from facetguard.policies import ContentPolicy, FacetAdminPolicy, UserPolicy
from facetguard.storage import StorageBundle, create_storage

logger = logging.getLogger(__name__)


@dataclass
class AccessControl:
    """
    A fully wired engine.
    """
    settings: EngineSettings
    storage: StorageBundle
    facets: FacetService
    hierarchy: HierarchyResolver
    engine: PermissionEngine
    audit: AuditSink
    posts: ContentPolicy
    media: ContentPolicy
    facet_admin: FacetAdminPolicy
    users: UserPolicy
    clock: Clock = utcnow

    async def check(
        self,
        check_fn: CheckFn,
        auth: Authentication | None,
        resource_type: str,
        *,
        fallback_operation: str = FALLBACK_OPERATION,
        sensitive: bool = True
    ) -> Decision:
        """
        Run a check through safe_check and hand the decision to the audit sink.

        The decision is returned without waiting for audit delivery.
        """
        decision = await safe_check(check_fn, fallback_operation, self.clock)
        self.audit.emit(decision, auth, resource_type, sensitive=sensitive)
        return decision

    async def close(self) -> None:
        logger.info("Shutting down access control...")
        await self.audit.close()
        await self.storage.close()
        logger.info("Access control stopped")


async def create_access_control(
    settings: EngineSettings | None = None,
    publisher: AuditPublisher | None = None,
    clock: Clock = utcnow,
) -> AccessControl:
    """
    Build storage, services, policies and the audit sink.

    Args:
        settings: Engine settings; read from the environment (and .env) if None
        publisher: Pre-built audit publisher overriding settings.audit_backend
        clock: Time source shared by every component

    Returns:
        Wired AccessControl
    """
    if settings is None:
        load_dotenv()
        settings = settings_from_env()

    logger.info("Starting access control...")

    storage = await create_storage(settings.storage_settings())
    logger.info(f"Storage initialized: {type(storage.facets).__name__}")

    facets = FacetService(storage.facets, clock=clock)
    hierarchy = HierarchyResolver(
        storage.entities,
        max_depth=settings.max_hierarchy_depth,
        clock=clock,
    )
    engine = PermissionEngine(max_concurrency=settings.filter_concurrency)

    if publisher is None:
        publisher = create_audit_publisher(
            backend=settings.audit_backend,
            redis_url=settings.redis_url,
            kafka_bootstrap_servers=settings.kafka_bootstrap_servers,
            rabbitmq_url=settings.rabbitmq_url,
            topic=settings.audit_topic,
        )
    audit = AuditSink(
        storage.audit,
        publisher=publisher,
        async_delivery=settings.audit_async,
        audit_all=settings.audit_all,
    )

    access = AccessControl(
        settings=settings,
        storage=storage,
        facets=facets,
        hierarchy=hierarchy,
        engine=engine,
        audit=audit,
        posts=ContentPolicy(facets, hierarchy, storage.relationships, "post", engine),
        media=ContentPolicy(facets, hierarchy, storage.relationships, "media", engine),
        facet_admin=FacetAdminPolicy(facets),
        users=UserPolicy(facets, hierarchy, storage.relationships),
        clock=clock,
    )

    logger.info(
        f"Access control started (audit={settings.audit_backend}, "
        f"max_depth={settings.max_hierarchy_depth})"
    )
    return access


async def _demo() -> None:
    from facetguard.policies import ResourceSnapshot, Visibility
    from facetguard.storage import EntityRecord

    access = await create_access_control(EngineSettings())
    try:
        await seed_default_facets(access.facets)
        await access.storage.entities.upsert_entity(EntityRecord(entity_id="manager"))
        await access.storage.entities.upsert_entity(EntityRecord(entity_id="report"))
        await access.storage.entities.upsert_entity(EntityRecord(entity_id="stranger"))
        await access.hierarchy.set_line_manager("report", "manager", actor_id="manager")

        post = ResourceSnapshot("post-1", owner_id="report", visibility=Visibility.PRIVATE)
        for requester in ("report", "manager", "stranger"):
            auth = Authentication(user_id=requester, request_id=f"demo-{requester}")
            decision = await access.check(
                lambda: access.posts.can_read(auth, post),
                auth,
                "post",
                fallback_operation="post-read",
            )
            logger.info(
                f"{requester} -> post-read: granted={decision.granted} "
                f"({decision.reason_code})"
            )

        await access.audit.flush()
        rows = await access.storage.audit.query(resource_type="post")
        logger.info(f"{len(rows)} audit rows recorded")
    finally:
        await access.close()


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    asyncio.run(_demo())


if __name__ == "__main__":
    main()
