# lpu/schemas/price_lists.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ApplyRulesRequest(_CamelModel):
    """Optional body; without ruleIds every active rule in scope is applied."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    rule_ids: Optional[List[str]] = Field(default=None, description="Subset of rule ids to apply")


class PriceStateOut(_CamelModel):
    # decimals travel as strings (no float rounding at the edge)
    unit_price: Optional[str] = None
    special_price: Optional[str] = None
    hourly_rate: Optional[str] = None
    travel_cost: Optional[str] = None


class IssueOut(BaseModel):
    code: str
    message: str
    meta: Dict[str, Any] = Field(default_factory=dict)


class ItemResultOut(_CamelModel):
    item_id: str
    status: Literal["applied", "unchanged", "skipped", "failed", "not_processed"]
    previous_state: Optional[PriceStateOut] = None
    new_state: Optional[PriceStateOut] = None
    matched_rule_ids: List[str] = Field(default_factory=list)
    applied_at: Optional[datetime] = None
    errors: List[IssueOut] = Field(default_factory=list)
    trace: List[Dict[str, Any]] = Field(default_factory=list)


class EvaluationResultOut(_CamelModel):
    run_id: str
    price_list_id: str
    tenant_id: str
    status: Literal["completed", "partial", "cancelled", "failed"]
    started_at: datetime
    finished_at: Optional[datetime] = None
    affected_item_count: int
    per_item: List[ItemResultOut] = Field(default_factory=list)
    warnings: List[IssueOut] = Field(default_factory=list)
    succeeded: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)
    not_processed: List[str] = Field(default_factory=list)
    error: Optional[IssueOut] = None


class ApplyRulesResponse(_CamelModel):
    affected_items: int
    results: EvaluationResultOut


class PriceListRuleOut(_CamelModel):
    id: str
    name: str
    rule_type: Optional[str] = None
    priority: Optional[int] = None
    # position in evaluation order; None when the rule is excluded
    order: Optional[int] = None
    reads: List[str] = Field(default_factory=list)
    issues: List[str] = Field(default_factory=list)
