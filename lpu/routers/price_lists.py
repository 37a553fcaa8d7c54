from __future__ import annotations

import asyncio
import threading
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from lpu.core.logging_config import logger
from lpu.dependencies import get_rule_engine, get_sql_rule_store, resolve_tenant
from lpu.engine import RuleEngine
from lpu.engine.conditions import referenced_fields
from lpu.engine.models import RunStatus
from lpu.repositories.rules import SqlRuleStore
from lpu.schemas.price_lists import (
    ApplyRulesRequest,
    ApplyRulesResponse,
    EvaluationResultOut,
    PriceListRuleOut,
)

router = APIRouter(prefix="/price-lists", tags=["price-lists"])

DISCONNECT_POLL_SECONDS = 0.5


async def _cancel_on_disconnect(request: Request, cancel: threading.Event) -> None:
    # client went away -> stop evaluating; already persisted rows stay
    while not cancel.is_set():
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)
        if await request.is_disconnected():
            logger.bind(path=str(request.url.path)).warning("client_disconnected_cancelling")
            cancel.set()


# ----------------------------
# Apply rules
# ----------------------------
@router.post("/{price_list_id}/apply-rules", response_model=ApplyRulesResponse)
async def apply_rules(
    price_list_id: str,
    request: Request,
    payload: Optional[ApplyRulesRequest] = Body(default=None),
    tenant_id: str = Depends(resolve_tenant),
    engine: RuleEngine = Depends(get_rule_engine),
):
    cancel = threading.Event()
    watcher = asyncio.create_task(_cancel_on_disconnect(request, cancel))
    try:
        result = await run_in_threadpool(
            engine.apply_rules,
            price_list_id,
            tenant_id=tenant_id,
            rule_ids=payload.rule_ids if payload else None,
            cancel=cancel,
        )
    finally:
        watcher.cancel()

    response = ApplyRulesResponse(
        affected_items=result.affected_item_count,
        results=EvaluationResultOut.model_validate(result.to_dict()),
    )
    if result.status is RunStatus.FAILED:
        return JSONResponse(
            status_code=503,
            content=response.model_dump(by_alias=True, mode="json"),
        )
    return response


# ----------------------------
# Rules of a price list
# ----------------------------
@router.get("/{price_list_id}/rules", response_model=List[PriceListRuleOut])
def get_price_list_rules(
    price_list_id: str,
    tenant_id: str = Depends(resolve_tenant),
    engine: RuleEngine = Depends(get_rule_engine),
) -> List[PriceListRuleOut]:
    selection = engine.preview_rules(price_list_id, tenant_id=tenant_id)

    out = [
        PriceListRuleOut(
            id=r.id,
            name=r.name,
            rule_type=r.rule_type.value,
            priority=r.priority,
            order=i,
            reads=list(referenced_fields(r.conditions)),
        )
        for i, r in enumerate(selection.rules)
    ]
    for w in selection.warnings:
        meta = w.get("meta") or {}
        if w.get("code") != "INVALID_RULE":
            continue
        out.append(
            PriceListRuleOut(
                id=str(meta.get("ruleId") or ""),
                name=str(meta.get("ruleId") or ""),
                issues=list(meta.get("issues") or []),
            )
        )
    return out


@router.post("/{price_list_id}/rules/{rule_id}", status_code=204)
def associate_rule(
    price_list_id: str,
    rule_id: str,
    tenant_id: str = Depends(resolve_tenant),
    engine: RuleEngine = Depends(get_rule_engine),
    store: SqlRuleStore = Depends(get_sql_rule_store),
) -> None:
    engine.preview_rules(price_list_id, tenant_id=tenant_id)  # 404 on unknown list
    if not store.associate(tenant_id, price_list_id, rule_id):
        raise HTTPException(status_code=404, detail=f"Pricing rule {rule_id} not found")


@router.delete("/{price_list_id}/rules/{rule_id}", status_code=204)
def detach_rule(
    price_list_id: str,
    rule_id: str,
    tenant_id: str = Depends(resolve_tenant),
    store: SqlRuleStore = Depends(get_sql_rule_store),
) -> None:
    if not store.detach(tenant_id, price_list_id, rule_id):
        raise HTTPException(status_code=404, detail="Rule is not associated with this price list")

