from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

from .models import EvaluationResult, ItemAttributes, PriceList, PriceListItem


@dataclass
class SaveResult:
    succeeded: List[str] = field(default_factory=list)
    # itemId -> reason
    failed: Dict[str, str] = field(default_factory=dict)


class RuleStore(Protocol):
    def list_active_rules(self, tenant_id: str, price_list_id: str) -> List[Dict[str, Any]]:
        """Raw (camelCase) rule definitions; validation happens in the engine."""
        ...


class CatalogStore(Protocol):
    def get_item_attributes(
        self, tenant_id: str, item_ids: Sequence[str]
    ) -> List[ItemAttributes]: ...


class PriceListItemStore(Protocol):
    def get_price_list(self, tenant_id: str, price_list_id: str) -> Optional[PriceList]: ...

    def get_items(self, tenant_id: str, price_list_id: str) -> List[PriceListItem]: ...

    def save_items(
        self,
        tenant_id: str,
        price_list_id: str,
        items: Sequence[PriceListItem],
        abort: Optional[threading.Event] = None,
    ) -> SaveResult:
        """
        Write the batch. Once `abort` is set no further item may be written;
        items left out are reported in `failed`.
        """
        ...


class AuditSink(Protocol):
    def publish(self, result: EvaluationResult) -> None: ...
