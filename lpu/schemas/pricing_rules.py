# lpu/schemas/pricing_rules.py
from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class PricingRuleIn(BaseModel):
    """
    Admin payload for a pricing rule. Structure of conditions/actions is
    checked by the engine's rule loader, not by pydantic, so the same
    validation applies to rules coming from the database or a YAML file.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    id: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    rule_type: str = Field(..., description="percentual | fixed | escalated | dynamic")
    priority: int = Field(1, ge=1)
    is_active: bool = True
    conditions: Optional[Any] = None
    actions: Any = Field(default_factory=list)
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None

    def to_record(self) -> dict:
        # python mode: timestamps stay datetime for the DateTime columns
        return self.model_dump(by_alias=True)


class PricingRuleOut(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    tenant_id: str
    name: str
    description: str = ""
    rule_type: str
    priority: int
    is_active: bool
    conditions: Optional[Any] = None
    actions: Any = None
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None
    price_list_ids: List[str] = Field(default_factory=list)
    issues: List[str] = Field(default_factory=list)


class RuleValidationOut(BaseModel):
    valid: bool
    issues: List[str] = Field(default_factory=list)
