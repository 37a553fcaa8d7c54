from __future__ import annotations

import threading
from typing import Dict, List, Optional, Sequence

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from lpu.engine.models import ItemAttributes, PriceList, PriceListItem
from lpu.engine.ports import SaveResult
from lpu.models.pricing import CatalogItemORM, PriceListItemORM, PriceListORM

log = structlog.get_logger("lpu.repositories.price_lists")


def _price_list(row: PriceListORM) -> PriceList:
    return PriceList(
        id=row.id,
        tenant_id=row.tenant_id,
        name=row.name,
        code=row.code or "",
        currency=row.currency or "BRL",
        automatic_margin=row.automatic_margin,
        customer_company_id=row.customer_company_id,
        customer_tier=row.customer_tier,
        is_active=bool(row.is_active),
    )


def _item(row: PriceListItemORM) -> PriceListItem:
    return PriceListItem(
        item_id=row.item_id or "",
        price_list_id=row.price_list_id,
        unit_price=row.unit_price,
        special_price=row.special_price,
        hourly_rate=row.hourly_rate,
        travel_cost=row.travel_cost,
        quantity_tier=row.quantity_tier,
        is_active=bool(row.is_active),
    )


class SqlCatalogStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def get_item_attributes(self, tenant_id: str, item_ids: Sequence[str]) -> List[ItemAttributes]:
        if not item_ids:
            return []
        with self._session_factory() as db:
            rows = db.scalars(
                select(CatalogItemORM).where(
                    CatalogItemORM.tenant_id == tenant_id,
                    CatalogItemORM.id.in_(list(item_ids)),
                )
            ).all()
            return [
                ItemAttributes(
                    item_id=r.id,
                    name=r.name,
                    item_type=r.type,
                    category=r.category,
                    measurement_unit=r.measurement_unit,
                    base_cost=r.base_cost,
                    attributes=dict(r.attributes or {}),
                )
                for r in rows
            ]


class SqlPriceListItemStore:
    """
    Price list + price list item access.

    save_items commits every item on its own: one failing row never rolls
    back rows that were already written. `abort` is checked before each row.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def get_price_list(self, tenant_id: str, price_list_id: str) -> Optional[PriceList]:
        with self._session_factory() as db:
            row = db.get(PriceListORM, price_list_id)
            if row is None or row.tenant_id != tenant_id:
                return None
            return _price_list(row)

    def get_items(self, tenant_id: str, price_list_id: str) -> List[PriceListItem]:
        with self._session_factory() as db:
            rows = db.scalars(
                select(PriceListItemORM)
                .where(
                    PriceListItemORM.tenant_id == tenant_id,
                    PriceListItemORM.price_list_id == price_list_id,
                )
                .order_by(PriceListItemORM.id.asc())
            ).all()
            return [_item(r) for r in rows]

    def save_items(
        self,
        tenant_id: str,
        price_list_id: str,
        items: Sequence[PriceListItem],
        abort: Optional[threading.Event] = None,
    ) -> SaveResult:
        result = SaveResult()
        with self._session_factory() as db:
            rows: Dict[str, PriceListItemORM] = {
                r.item_id: r
                for r in db.scalars(
                    select(PriceListItemORM).where(
                        PriceListItemORM.tenant_id == tenant_id,
                        PriceListItemORM.price_list_id == price_list_id,
                        PriceListItemORM.item_id.in_([i.item_id for i in items]),
                    )
                ).all()
            }

            for item in items:
                if abort is not None and abort.is_set():
                    result.failed[item.item_id] = "write aborted"
                    continue
                row = rows.get(item.item_id)
                if row is None:
                    result.failed[item.item_id] = "price list item no longer exists"
                    continue
                try:
                    row.unit_price = item.unit_price
                    row.special_price = item.special_price
                    row.hourly_rate = item.hourly_rate
                    row.travel_cost = item.travel_cost
                    db.commit()
                except SQLAlchemyError as e:
                    db.rollback()
                    log.error(
                        "price_list_item_save_failed",
                        price_list_id=price_list_id,
                        item_id=item.item_id,
                        error=repr(e),
                    )
                    result.failed[item.item_id] = repr(e)
                    continue
                result.succeeded.append(item.item_id)
        return result
