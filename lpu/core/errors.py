from __future__ import annotations

from typing import Any, Dict, List, Optional


class PricingEngineError(Exception):
    """
    Base for all rule engine errors.
    - code: stable UPPER_SNAKE code (exposed in results / HTTP bodies)
    - message: human readable
    - meta: explainability payload
    """

    code: str = "PRICING_ENGINE_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ):
        if code is not None:
            self.code = str(code)
        self.message = str(message)
        self.meta = meta or {}
        super().__init__(f"{self.code}: {self.message}")

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "meta": dict(self.meta)}


class ConfigurationError(PricingEngineError):
    """Invalid rule structure. The rule is excluded from the active set."""

    code = "INVALID_RULE"

    def __init__(
        self,
        message: str,
        *,
        issues: Optional[List[str]] = None,
        code: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ):
        self.issues = list(issues or [])
        meta = dict(meta or {})
        if self.issues:
            meta.setdefault("issues", self.issues)
        super().__init__(message, code=code, meta=meta)


class EvaluationError(PricingEngineError):
    """One item cannot be evaluated; it is marked skipped."""

    code = "ITEM_SKIPPED"


class ActionError(PricingEngineError):
    """One action would produce an invalid price; only that action is skipped."""

    code = "ACTION_REJECTED"


class PersistenceError(PricingEngineError):
    """Store write failure for one or more items."""

    code = "PERSISTENCE_FAILED"


class FatalError(PricingEngineError):
    """The run cannot proceed at all; nothing is applied."""

    code = "FATAL"


class PriceListNotFoundError(PricingEngineError):
    code = "PRICE_LIST_NOT_FOUND"


class PriceListBusyError(PricingEngineError):
    """Another apply-rules run holds the lock for this price list."""

    code = "PRICE_LIST_BUSY"
