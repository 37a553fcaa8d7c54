from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from lpu.models.pricing import PriceListRuleORM, PricingRuleORM


def rule_to_dict(row: PricingRuleORM, price_list_ids: Optional[List[str]] = None) -> Dict[str, Any]:
    """Stored JSON shape consumed by lpu.engine.rule_loader.parse_rule."""
    return {
        "id": row.id,
        "tenantId": row.tenant_id,
        "name": row.name,
        "description": row.description or "",
        "ruleType": row.rule_type,
        "priority": row.priority,
        "isActive": bool(row.is_active),
        "conditions": row.conditions,
        "actions": row.actions,
        "validFrom": row.valid_from,
        "validTo": row.valid_to,
        "priceListIds": sorted(price_list_ids or []),
    }


class SqlRuleStore:
    """
    Pricing rule data access (pure CRUD, no validation here).
    Every call opens its own session so the store can be shared across threads.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    # --- engine port ---

    def list_active_rules(self, tenant_id: str, price_list_id: str) -> List[Dict[str, Any]]:
        with self._session_factory() as db:
            rows = db.scalars(
                select(PricingRuleORM)
                .where(PricingRuleORM.tenant_id == tenant_id, PricingRuleORM.is_active.is_(True))
                .order_by(PricingRuleORM.priority.asc(), PricingRuleORM.id.asc())
            ).all()
            scopes = self._scopes(db, tenant_id, [r.id for r in rows])

        out = []
        for r in rows:
            ids = scopes.get(r.id, [])
            if ids and price_list_id not in ids:
                continue
            out.append(rule_to_dict(r, ids))
        return out

    # --- admin ---

    def list_rules(self, tenant_id: str) -> List[Dict[str, Any]]:
        with self._session_factory() as db:
            rows = db.scalars(
                select(PricingRuleORM)
                .where(PricingRuleORM.tenant_id == tenant_id)
                .order_by(PricingRuleORM.priority.asc(), PricingRuleORM.id.asc())
            ).all()
            scopes = self._scopes(db, tenant_id, [r.id for r in rows])
        return [rule_to_dict(r, scopes.get(r.id)) for r in rows]

    def get_rule(self, tenant_id: str, rule_id: str) -> Optional[Dict[str, Any]]:
        with self._session_factory() as db:
            row = self._get(db, tenant_id, rule_id)
            if row is None:
                return None
            scopes = self._scopes(db, tenant_id, [row.id])
        return rule_to_dict(row, scopes.get(row.id))

    def create_rule(self, tenant_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        with self._session_factory() as db:
            row = PricingRuleORM(id=str(data["id"]), tenant_id=tenant_id)
            self._fill(row, data)
            db.add(row)
            db.commit()
            db.refresh(row)
            return rule_to_dict(row, [])

    def update_rule(self, tenant_id: str, rule_id: str, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with self._session_factory() as db:
            row = self._get(db, tenant_id, rule_id)
            if row is None:
                return None
            self._fill(row, data)
            db.commit()
            db.refresh(row)
            scopes = self._scopes(db, tenant_id, [row.id])
            return rule_to_dict(row, scopes.get(row.id))

    def delete_rule(self, tenant_id: str, rule_id: str) -> bool:
        with self._session_factory() as db:
            row = self._get(db, tenant_id, rule_id)
            if row is None:
                return False
            for link in db.scalars(
                select(PriceListRuleORM).where(
                    PriceListRuleORM.tenant_id == tenant_id, PriceListRuleORM.rule_id == rule_id
                )
            ).all():
                db.delete(link)
            db.delete(row)
            db.commit()
            return True

    def associate(self, tenant_id: str, price_list_id: str, rule_id: str) -> bool:
        """Scope a rule to a price list and make sure it is active."""
        with self._session_factory() as db:
            row = self._get(db, tenant_id, rule_id)
            if row is None:
                return False
            link = db.get(PriceListRuleORM, (price_list_id, rule_id))
            if link is None:
                db.add(
                    PriceListRuleORM(
                        price_list_id=price_list_id, rule_id=rule_id, tenant_id=tenant_id
                    )
                )
            row.is_active = True
            db.commit()
            return True

    def detach(self, tenant_id: str, price_list_id: str, rule_id: str) -> bool:
        with self._session_factory() as db:
            link = db.get(PriceListRuleORM, (price_list_id, rule_id))
            if link is None or link.tenant_id != tenant_id:
                return False
            db.delete(link)
            db.commit()
            return True

    # --- internals ---

    @staticmethod
    def _get(db: Session, tenant_id: str, rule_id: str) -> Optional[PricingRuleORM]:
        row = db.get(PricingRuleORM, rule_id)
        if row is None or row.tenant_id != tenant_id:
            return None
        return row

    @staticmethod
    def _scopes(db: Session, tenant_id: str, rule_ids: List[str]) -> Dict[str, List[str]]:
        if not rule_ids:
            return {}
        links = db.scalars(
            select(PriceListRuleORM).where(
                PriceListRuleORM.tenant_id == tenant_id,
                PriceListRuleORM.rule_id.in_(rule_ids),
            )
        ).all()
        out: Dict[str, List[str]] = {}
        for link in links:
            out.setdefault(link.rule_id, []).append(link.price_list_id)
        return out

    @staticmethod
    def _fill(row: PricingRuleORM, data: Dict[str, Any]) -> None:
        row.name = str(data.get("name") or data.get("id") or row.id)
        row.description = data.get("description")
        row.rule_type = str(data.get("ruleType") or "dynamic")
        row.priority = int(data.get("priority", 1))
        row.is_active = bool(data.get("isActive", True))
        row.conditions = data.get("conditions")
        row.actions = data.get("actions") or []
        row.valid_from = data.get("validFrom")
        row.valid_to = data.get("validTo")
