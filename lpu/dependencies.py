from __future__ import annotations

from functools import lru_cache
from typing import Optional

from fastapi import Header, HTTPException

from lpu.audit.logger import BackgroundAuditSink, FanOutAuditSink, LogAuditSink, SqlAuditSink
from lpu.core.settings import settings
from lpu.db import SessionLocal
from lpu.engine import RuleEngine
from lpu.engine.context import ItemAttributeCache
from lpu.engine.ports import RuleStore
from lpu.repositories.price_lists import SqlCatalogStore, SqlPriceListItemStore
from lpu.repositories.rule_file_store import YamlRuleStore
from lpu.repositories.rules import SqlRuleStore


async def resolve_tenant(
    x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-Id"),
) -> str:
    """Tenant comes from the gateway (auth is handled upstream)."""
    tenant_id = (x_tenant_id or "").strip()
    if not tenant_id:
        raise HTTPException(status_code=400, detail="X-Tenant-Id header is required")
    return tenant_id


@lru_cache
def get_sql_rule_store() -> SqlRuleStore:
    return SqlRuleStore(SessionLocal)


@lru_cache
def get_rule_store() -> RuleStore:
    if settings.RULES_YAML_PATH:
        return YamlRuleStore(settings.RULES_YAML_PATH)
    return get_sql_rule_store()


@lru_cache
def get_item_cache() -> ItemAttributeCache:
    return ItemAttributeCache(
        max_entries=settings.ITEM_CACHE_MAX_ENTRIES,
        ttl_seconds=settings.ITEM_CACHE_TTL_SECONDS,
    )


@lru_cache
def get_rule_engine() -> RuleEngine:
    audit = None
    if settings.AUDIT_ENABLED:
        audit = BackgroundAuditSink(FanOutAuditSink([LogAuditSink(), SqlAuditSink(SessionLocal)]))

    return RuleEngine(
        rule_store=get_rule_store(),
        catalog_store=SqlCatalogStore(SessionLocal),
        item_store=SqlPriceListItemStore(SessionLocal),
        audit_sink=audit,
        cache=get_item_cache(),
        max_workers=settings.RULE_ENGINE_MAX_WORKERS,
        save_timeout=settings.RULE_ENGINE_SAVE_TIMEOUT_SECONDS,
        lock_timeout=settings.RULE_ENGINE_LOCK_TIMEOUT_SECONDS,
    )
