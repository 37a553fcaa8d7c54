from __future__ import annotations

import threading
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Sequence

from lpu.engine.models import ItemAttributes, PriceList, PriceListItem
from lpu.engine.ports import SaveResult


class InMemoryRuleStore:
    def __init__(self, rules: Optional[Iterable[Dict[str, Any]]] = None):
        self.rules: List[Dict[str, Any]] = [dict(r) for r in (rules or [])]

    def list_active_rules(self, tenant_id: str, price_list_id: str) -> List[Dict[str, Any]]:
        out = []
        for r in self.rules:
            if r.get("tenantId", tenant_id) != tenant_id or not r.get("isActive", True):
                continue
            scope = r.get("priceListIds") or []
            if scope and price_list_id not in scope:
                continue
            out.append(dict(r))
        return out


class InMemoryCatalogStore:
    def __init__(self, items: Optional[Iterable[ItemAttributes]] = None, tenant_id: str = ""):
        self.tenant_id = tenant_id
        self.items: Dict[str, ItemAttributes] = {a.item_id: a for a in (items or [])}
        self.calls = 0

    def get_item_attributes(self, tenant_id: str, item_ids: Sequence[str]) -> List[ItemAttributes]:
        self.calls += 1
        if self.tenant_id and tenant_id != self.tenant_id:
            return []
        return [self.items[i] for i in item_ids if i in self.items]


class InMemoryPriceListItemStore:
    """
    Thread-safe dict-backed store. `fail_items` simulates per-row write
    failures (itemId -> reason).
    """

    def __init__(
        self,
        price_lists: Optional[Iterable[PriceList]] = None,
        items: Optional[Iterable[PriceListItem]] = None,
    ):
        self._lock = threading.Lock()
        self.price_lists: Dict[str, PriceList] = {p.id: p for p in (price_lists or [])}
        self.items: Dict[str, Dict[str, PriceListItem]] = {}
        for i in items or []:
            self.items.setdefault(i.price_list_id, {})[i.item_id] = i
        self.fail_items: Dict[str, str] = {}
        self.saves: List[List[str]] = []

    def get_price_list(self, tenant_id: str, price_list_id: str) -> Optional[PriceList]:
        pl = self.price_lists.get(price_list_id)
        if pl is None or pl.tenant_id != tenant_id:
            return None
        return pl

    def get_items(self, tenant_id: str, price_list_id: str) -> List[PriceListItem]:
        if self.get_price_list(tenant_id, price_list_id) is None:
            return []
        with self._lock:
            return list(self.items.get(price_list_id, {}).values())

    def save_items(
        self,
        tenant_id: str,
        price_list_id: str,
        items: Sequence[PriceListItem],
        abort: Optional[threading.Event] = None,
    ) -> SaveResult:
        result = SaveResult()
        with self._lock:
            self.saves.append([i.item_id for i in items])
            bucket = self.items.setdefault(price_list_id, {})
            for item in items:
                if abort is not None and abort.is_set():
                    result.failed[item.item_id] = "write aborted"
                    continue
                if item.item_id in self.fail_items:
                    result.failed[item.item_id] = self.fail_items[item.item_id]
                    continue
                bucket[item.item_id] = replace(item)
                result.succeeded.append(item.item_id)
        return result

    def item(self, price_list_id: str, item_id: str) -> PriceListItem:
        with self._lock:
            return self.items[price_list_id][item_id]
