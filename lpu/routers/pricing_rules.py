from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException

from lpu.core.errors import ConfigurationError
from lpu.core.logging_config import logger
from lpu.dependencies import get_sql_rule_store, resolve_tenant
from lpu.engine.rule_loader import validate_rule
from lpu.repositories.rules import SqlRuleStore
from lpu.schemas.pricing_rules import PricingRuleIn, PricingRuleOut, RuleValidationOut

router = APIRouter(prefix="/pricing-rules", tags=["pricing-rules"])


def _out(record: Dict[str, Any]) -> PricingRuleOut:
    return PricingRuleOut(
        id=record["id"],
        tenant_id=record["tenantId"],
        name=record["name"],
        description=record.get("description") or "",
        rule_type=record["ruleType"],
        priority=record["priority"],
        is_active=record["isActive"],
        conditions=record.get("conditions"),
        actions=record.get("actions"),
        valid_from=record.get("validFrom"),
        valid_to=record.get("validTo"),
        price_list_ids=record.get("priceListIds") or [],
        issues=validate_rule(record),
    )


def _checked(payload: PricingRuleIn, tenant_id: str) -> Dict[str, Any]:
    record = payload.to_record()
    record["tenantId"] = tenant_id
    issues = validate_rule(record)
    if issues:
        # rejected at write time, never at evaluation time
        raise ConfigurationError(
            f"Pricing rule {payload.id} is invalid",
            issues=issues,
            meta={"ruleId": payload.id},
        )
    return record


@router.get("", response_model=List[PricingRuleOut])
def list_pricing_rules(
    tenant_id: str = Depends(resolve_tenant),
    store: SqlRuleStore = Depends(get_sql_rule_store),
) -> List[PricingRuleOut]:
    return [_out(r) for r in store.list_rules(tenant_id)]


@router.get("/{rule_id}", response_model=PricingRuleOut)
def get_pricing_rule(
    rule_id: str,
    tenant_id: str = Depends(resolve_tenant),
    store: SqlRuleStore = Depends(get_sql_rule_store),
) -> PricingRuleOut:
    record = store.get_rule(tenant_id, rule_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Pricing rule {rule_id} not found")
    return _out(record)


@router.post("", response_model=PricingRuleOut, status_code=201)
def create_pricing_rule(
    payload: PricingRuleIn,
    tenant_id: str = Depends(resolve_tenant),
    store: SqlRuleStore = Depends(get_sql_rule_store),
) -> PricingRuleOut:
    record = _checked(payload, tenant_id)
    if store.get_rule(tenant_id, payload.id) is not None:
        raise HTTPException(status_code=409, detail=f"Pricing rule {payload.id} already exists")

    created = store.create_rule(tenant_id, record)
    logger.bind(tenant_id=tenant_id, rule_id=payload.id).info("pricing_rule_created")
    return _out(created)


@router.put("/{rule_id}", response_model=PricingRuleOut)
def update_pricing_rule(
    rule_id: str,
    payload: PricingRuleIn,
    tenant_id: str = Depends(resolve_tenant),
    store: SqlRuleStore = Depends(get_sql_rule_store),
) -> PricingRuleOut:
    if payload.id != rule_id:
        raise HTTPException(status_code=400, detail="Rule id in path and body differ")
    record = _checked(payload, tenant_id)

    updated = store.update_rule(tenant_id, rule_id, record)
    if updated is None:
        raise HTTPException(status_code=404, detail=f"Pricing rule {rule_id} not found")
    logger.bind(tenant_id=tenant_id, rule_id=rule_id).info("pricing_rule_updated")
    return _out(updated)


@router.delete("/{rule_id}", status_code=204)
def delete_pricing_rule(
    rule_id: str,
    tenant_id: str = Depends(resolve_tenant),
    store: SqlRuleStore = Depends(get_sql_rule_store),
) -> None:
    if not store.delete_rule(tenant_id, rule_id):
        raise HTTPException(status_code=404, detail=f"Pricing rule {rule_id} not found")
    logger.bind(tenant_id=tenant_id, rule_id=rule_id).info("pricing_rule_deleted")


@router.post("/validate", response_model=RuleValidationOut)
def validate_pricing_rule(
    payload: PricingRuleIn,
    tenant_id: str = Depends(resolve_tenant),
) -> RuleValidationOut:
    record = payload.to_record()
    record["tenantId"] = tenant_id
    issues = validate_rule(record)
    return RuleValidationOut(valid=not issues, issues=issues)
