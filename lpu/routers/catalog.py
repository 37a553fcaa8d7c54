from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Body, Depends

from lpu.core.logging_config import logger
from lpu.dependencies import get_item_cache, resolve_tenant
from lpu.engine.context import ItemAttributeCache

router = APIRouter(prefix="/catalog", tags=["catalog"])


@router.post("/cache/invalidate")
def invalidate_item_cache(
    item_ids: Optional[List[str]] = Body(default=None, embed=True, alias="itemIds"),
    tenant_id: str = Depends(resolve_tenant),
    cache: ItemAttributeCache = Depends(get_item_cache),
) -> dict:
    """Catalog changed upstream: drop cached attributes (whole tenant when no ids)."""
    dropped = cache.invalidate(tenant_id, item_ids)
    logger.bind(tenant_id=tenant_id, dropped=dropped).info("item_cache_invalidated")
    return {"invalidated": dropped}
