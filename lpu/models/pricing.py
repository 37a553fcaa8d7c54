# lpu/models/pricing.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, DateTime, Integer, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from lpu.db import Base


class PricingRuleORM(Base):
    __tablename__ = "pricing_rules"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # percentual | fixed | escalated | dynamic (label only)
    rule_type: Mapped[str] = mapped_column(String(30), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    conditions: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    actions: Mapped[Any] = mapped_column(JSON, nullable=False)

    valid_from: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    valid_to: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class PriceListRuleORM(Base):
    """Restricts a rule to specific price lists; rules without rows are tenant-wide."""

    __tablename__ = "price_list_rules"

    price_list_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    rule_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)


class PriceListORM(Base):
    __tablename__ = "price_lists"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str] = mapped_column(String(50), default="")
    version: Mapped[str] = mapped_column(String(20), default="1.0")

    customer_company_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    customer_tier: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    currency: Mapped[str] = mapped_column(String(3), default="BRL")
    automatic_margin: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class PriceListItemORM(Base):
    __tablename__ = "price_list_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    price_list_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    item_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    special_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    hourly_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    travel_cost: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    quantity_tier: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 3), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class CatalogItemORM(Base):
    __tablename__ = "items"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(20), default="material")  # material | service
    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    measurement_unit: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    base_cost: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)

    attributes: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class ApplyRulesAuditORM(Base):
    __tablename__ = "apply_rules_audit"

    run_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    price_list_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False)
    affected_item_count: Mapped[int] = mapped_column(Integer, default=0)
    payload: Mapped[Any] = mapped_column(JSON, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
