from __future__ import annotations

import threading
import time
from collections import Counter, OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import structlog

from lpu.core.errors import EvaluationError, FatalError

from .models import (
    EvaluationContext,
    ItemAttributes,
    ItemResult,
    ItemStatus,
    PriceList,
    PriceListItem,
)
from .ports import CatalogStore

log = structlog.get_logger("lpu.engine.context")

CacheKey = Tuple[str, str]  # (tenant_id, item_id)


class ItemAttributeCache:
    """
    Bounded LRU + TTL cache of catalog attributes.

    Only attributes are cached; price state and price list attributes are
    always read fresh, and EvaluationContexts themselves are never cached.
    """

    def __init__(
        self,
        max_entries: int = 5000,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_entries = max(0, int(max_entries))
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._data: "OrderedDict[CacheKey, Tuple[float, ItemAttributes]]" = OrderedDict()

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def get_many(self, tenant_id: str, item_ids: Iterable[str]) -> Dict[str, ItemAttributes]:
        now = self._clock()
        out: Dict[str, ItemAttributes] = {}
        with self._lock:
            for item_id in item_ids:
                key = (tenant_id, item_id)
                hit = self._data.get(key)
                if hit is None:
                    continue
                stored_at, attrs = hit
                if now - stored_at > self.ttl_seconds:
                    del self._data[key]
                    continue
                self._data.move_to_end(key)
                out[item_id] = attrs
        return out

    def put_many(self, tenant_id: str, attrs: Iterable[ItemAttributes]) -> None:
        if self.max_entries == 0:
            return
        now = self._clock()
        with self._lock:
            for a in attrs:
                key = (tenant_id, a.item_id)
                self._data[key] = (now, a)
                self._data.move_to_end(key)
            while len(self._data) > self.max_entries:
                self._data.popitem(last=False)

    def invalidate(self, tenant_id: str, item_ids: Optional[Iterable[str]] = None) -> int:
        """Drop entries for the given items, or every entry of the tenant."""
        with self._lock:
            if item_ids is None:
                keys = [k for k in self._data if k[0] == tenant_id]
            else:
                keys = [(tenant_id, i) for i in item_ids if (tenant_id, i) in self._data]
            for k in keys:
                del self._data[k]
            return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


@dataclass
class ResolvedContexts:
    contexts: List[EvaluationContext] = field(default_factory=list)
    skipped: List[ItemResult] = field(default_factory=list)


class ItemContextResolver:
    """
    Builds one fresh EvaluationContext per (price list, item).

    - dangling item reference / invalid item -> that item is skipped
    - catalog unreachable -> FatalError (whole run becomes a no-op)
    """

    def __init__(self, catalog: CatalogStore, cache: Optional[ItemAttributeCache] = None):
        self.catalog = catalog
        self.cache = cache

    def resolve(
        self,
        price_list: PriceList,
        items: Sequence[PriceListItem],
        *,
        now: datetime,
    ) -> ResolvedContexts:
        tenant_id = price_list.tenant_id
        attrs = self._load_attributes(tenant_id, [i.item_id for i in items])
        # two rows for one item: no way to tell which price is the real one
        counts = Counter(i.item_id for i in items if i.item_id)
        duplicated = set()

        out = ResolvedContexts()
        for item in items:
            if counts[item.item_id] > 1:
                if item.item_id not in duplicated:
                    duplicated.add(item.item_id)
                    self._skip(out, price_list, item, EvaluationError(
                        f"Item {item.item_id} appears {counts[item.item_id]} times in the price list",
                        code="DUPLICATE_ITEM",
                        meta={"itemId": item.item_id, "rows": counts[item.item_id]},
                    ))
                continue
            try:
                out.contexts.append(self._build(price_list, item, attrs, now))
            except EvaluationError as e:
                self._skip(out, price_list, item, e)
        return out

    @staticmethod
    def _skip(out: ResolvedContexts, price_list: PriceList, item: PriceListItem, e: EvaluationError) -> None:
        log.warning(
            "item_skipped",
            price_list_id=price_list.id,
            item_id=item.item_id,
            code=e.code,
            reason=e.message,
        )
        out.skipped.append(
            ItemResult(
                item_id=item.item_id,
                status=ItemStatus.SKIPPED,
                previous_state=item.state,
                errors=[e.to_dict()],
            )
        )

    def _build(
        self,
        price_list: PriceList,
        item: PriceListItem,
        attrs: Dict[str, ItemAttributes],
        now: datetime,
    ) -> EvaluationContext:
        if not item.item_id:
            raise EvaluationError("Price list item has no item reference", code="MISSING_ITEM_REF")

        a = attrs.get(item.item_id)
        if a is None:
            raise EvaluationError(
                f"Item {item.item_id} not found in catalog",
                code="ITEM_NOT_FOUND",
                meta={"itemId": item.item_id},
            )

        if item.unit_price is None or item.unit_price < 0:
            raise EvaluationError(
                f"Item {item.item_id} has an invalid unit price",
                code="INVALID_ITEM_STATE",
                meta={"itemId": item.item_id, "unitPrice": str(item.unit_price)},
            )

        return EvaluationContext(
            price_list=price_list,
            item=item,
            attributes=a,
            state=item.state,
            now=now,
        )

    def _load_attributes(self, tenant_id: str, item_ids: List[str]) -> Dict[str, ItemAttributes]:
        wanted = sorted({i for i in item_ids if i})
        found: Dict[str, ItemAttributes] = {}
        if self.cache is not None:
            found.update(self.cache.get_many(tenant_id, wanted))

        missing = [i for i in wanted if i not in found]
        if not missing:
            return found

        try:
            fetched = self.catalog.get_item_attributes(tenant_id, missing)
        except Exception as e:
            raise FatalError(
                "Catalog store unavailable; no contexts could be resolved",
                code="CONTEXT_UNAVAILABLE",
                meta={"error": repr(e)},
            ) from e

        requested = set(missing)
        fetched = [a for a in fetched if a.item_id in requested]
        if self.cache is not None:
            self.cache.put_many(tenant_id, fetched)
        found.update({a.item_id: a for a in fetched})
        return found
