from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence
from uuid import uuid4

import structlog

from lpu.core.errors import FatalError, PersistenceError, PriceListNotFoundError
from lpu.observability.metrics import (
    apply_runs_counter,
    items_counter,
    rule_matches_counter,
    rule_warnings_counter,
    run_latency_hist,
)

from .actions import ActionApplicator
from .conditions import evaluate
from .context import ItemAttributeCache, ItemContextResolver
from .locks import PriceListLocks
from .models import (
    EvaluationContext,
    EvaluationResult,
    ItemResult,
    ItemStatus,
    PricingRule,
    RunStatus,
)
from .ports import AuditSink, CatalogStore, PriceListItemStore, RuleStore, SaveResult
from .rule_loader import RuleSelection, select_rules

log = structlog.get_logger("lpu.engine")


class RuleEngine:
    """
    Apply-rules orchestrator for one price list.

    Behaviour:
    - rules: active, valid, in scope; ordered by (priority, id)
    - per item (independent, on a bounded pool): fold rules in order; a rule
      whose condition matches the *current* state applies its actions
    - changed items are persisted in one batch; partial success is reported
    - only a FatalError turns the run into a no-op
    - `now` and `run_id` are injectable so runs are reproducible in tests
    """

    def __init__(
        self,
        rule_store: RuleStore,
        catalog_store: CatalogStore,
        item_store: PriceListItemStore,
        *,
        audit_sink: Optional[AuditSink] = None,
        cache: Optional[ItemAttributeCache] = None,
        locks: Optional[PriceListLocks] = None,
        max_workers: int = 4,
        save_timeout: Optional[float] = None,
        lock_timeout: Optional[float] = None,
    ):
        self.rule_store = rule_store
        self.item_store = item_store
        self.resolver = ItemContextResolver(catalog_store, cache=cache)
        self.applicator = ActionApplicator()
        self.audit_sink = audit_sink
        self.locks = locks or PriceListLocks()
        self.max_workers = max(1, int(max_workers))
        self.save_timeout = save_timeout
        self.lock_timeout = lock_timeout

    # -----------------
    # public
    # -----------------

    def apply_rules(
        self,
        price_list_id: str,
        *,
        tenant_id: str,
        rule_ids: Optional[Sequence[str]] = None,
        cancel: Optional[threading.Event] = None,
        save_timeout: Optional[float] = None,
        run_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> EvaluationResult:
        if now is None:
            now = datetime.now(timezone.utc)
        if run_id is None:
            run_id = uuid4().hex
        if save_timeout is None:
            save_timeout = self.save_timeout

        bound = log.bind(run_id=run_id, tenant_id=tenant_id, price_list_id=price_list_id)
        t0 = time.perf_counter()

        result = EvaluationResult(
            run_id=run_id,
            price_list_id=price_list_id,
            tenant_id=tenant_id,
            status=RunStatus.COMPLETED,
            started_at=now,
        )

        with self.locks.hold(price_list_id, timeout=self.lock_timeout):
            bound.info("apply_rules_started", rule_ids=list(rule_ids or []))
            try:
                self._run(result, rule_ids=rule_ids, cancel=cancel, save_timeout=save_timeout, now=now)
            except FatalError as e:
                bound.error("apply_rules_failed", code=e.code, error=e.message)
                self._fail(result, e)

        result.finished_at = datetime.now(timezone.utc)
        self._observe(result, time.perf_counter() - t0)
        bound.info(
            "apply_rules_finished",
            status=result.status.value,
            affected=result.affected_item_count,
            failed=len(result.failed),
            not_processed=len(result.not_processed),
            warnings=len(result.warnings),
        )
        self._publish(result)
        return result

    def preview_rules(
        self,
        price_list_id: str,
        *,
        tenant_id: str,
        now: Optional[datetime] = None,
    ) -> RuleSelection:
        """Rules a run would use right now, in evaluation order (read-only)."""
        if self.item_store.get_price_list(tenant_id, price_list_id) is None:
            raise PriceListNotFoundError(
                f"Price list {price_list_id} not found",
                meta={"priceListId": price_list_id},
            )
        records = self.rule_store.list_active_rules(tenant_id, price_list_id)
        return select_rules(records, tenant_id=tenant_id, price_list_id=price_list_id, now=now)

    def evaluate_item(self, ctx: EvaluationContext, rules: Sequence[PricingRule]) -> ItemResult:
        """Fold the ordered rules over one item. Pure: no I/O, no shared state."""
        current = ctx
        out = ItemResult(
            item_id=ctx.item.item_id,
            status=ItemStatus.UNCHANGED,
            previous_state=ctx.state,
        )

        for rule in rules:
            if not evaluate(rule.conditions, current):
                continue
            out.matched_rule_ids.append(rule.id)
            applied = self.applicator.apply(rule.actions, current.state, current, rule_id=rule.id)
            out.trace.extend(s.to_dict() for s in applied.steps)
            out.errors.extend(e.to_dict() for e in applied.errors)
            current = current.with_state(applied.state)

        out.new_state = current.state
        return out

    # -----------------
    # internals
    # -----------------

    def _run(
        self,
        result: EvaluationResult,
        *,
        rule_ids: Optional[Sequence[str]],
        cancel: Optional[threading.Event],
        save_timeout: Optional[float],
        now: datetime,
    ) -> None:
        tenant_id = result.tenant_id
        price_list_id = result.price_list_id

        price_list = self._read("get_price_list", self.item_store.get_price_list, tenant_id, price_list_id)
        if price_list is None:
            raise PriceListNotFoundError(
                f"Price list {price_list_id} not found",
                meta={"priceListId": price_list_id},
            )

        records = self._read("list_active_rules", self.rule_store.list_active_rules, tenant_id, price_list_id)
        selection: RuleSelection = select_rules(
            records,
            tenant_id=tenant_id,
            price_list_id=price_list_id,
            now=now,
            rule_ids=rule_ids,
        )
        result.warnings.extend(selection.warnings)

        items = self._read("get_items", self.item_store.get_items, tenant_id, price_list_id)
        items = [i for i in items if i.is_active]

        resolved = self.resolver.resolve(price_list, items, now=now)
        item_results = self._evaluate_all(resolved.contexts, selection.rules, cancel)

        by_id: Dict[str, ItemResult] = {r.item_id: r for r in resolved.skipped}
        changed: List = []
        for ctx, r in zip(resolved.contexts, item_results):
            if r is None:
                r = ItemResult(
                    item_id=ctx.item.item_id,
                    status=ItemStatus.NOT_PROCESSED,
                    previous_state=ctx.state,
                )
                result.not_processed.append(r.item_id)
            elif r.changed:
                changed.append(ctx.item.with_state(r.new_state))
            by_id[r.item_id] = r

        # keep store order in the result, one entry per item id
        result.per_item = [by_id[i] for i in dict.fromkeys(i.item_id for i in items) if i in by_id]

        if changed:
            saved = self._persist(tenant_id, price_list_id, changed, save_timeout)
            self._merge_save(result, by_id, saved, now)

        if result.not_processed:
            result.status = RunStatus.CANCELLED
        elif result.failed or resolved.skipped:
            result.status = RunStatus.PARTIAL

    def _evaluate_all(
        self,
        contexts: Sequence[EvaluationContext],
        rules: Sequence[PricingRule],
        cancel: Optional[threading.Event],
    ) -> List[Optional[ItemResult]]:
        def work(ctx: EvaluationContext) -> Optional[ItemResult]:
            if cancel is not None and cancel.is_set():
                return None
            return self.evaluate_item(ctx, rules)

        if self.max_workers == 1 or len(contexts) <= 1:
            return [work(c) for c in contexts]

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="lpu-eval") as pool:
            # map() keeps input order
            return list(pool.map(work, contexts))

    def _persist(
        self,
        tenant_id: str,
        price_list_id: str,
        items: List,
        timeout: Optional[float],
    ) -> SaveResult:
        ids = [i.item_id for i in items]

        if timeout is None:
            try:
                return self.item_store.save_items(tenant_id, price_list_id, items)
            except Exception as e:
                return self._save_failed(ids, PersistenceError(f"Batch write failed: {e!r}"))

        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="lpu-save")
        abort = threading.Event()
        try:
            fut = pool.submit(self.item_store.save_items, tenant_id, price_list_id, items, abort)
            try:
                return fut.result(timeout=timeout)
            except FutureTimeout:
                abort.set()
                log.warning("persist_deadline_exceeded", timeout=timeout, items=len(ids))
                # the caller still holds the price-list lock: wait for the store
                # to stop so nothing is written behind the reported result
                late = fut.result()
            return self._timed_out(ids, late, timeout)
        except Exception as e:
            return self._save_failed(ids, PersistenceError(f"Batch write failed: {e!r}"))
        finally:
            pool.shutdown(wait=True)

    @staticmethod
    def _timed_out(ids: List[str], late: SaveResult, timeout: float) -> SaveResult:
        """Items the store wrote before it saw the abort stay written; the rest fail."""
        err = PersistenceError(f"Batch write exceeded {timeout}s", code="PERSISTENCE_TIMEOUT")
        acked = set(late.succeeded)
        written = [i for i in ids if i in acked and i not in late.failed]
        failed = {i: f"{err.code}: {err.message}" for i in ids if i not in written}
        log.error("persist_failed", code=err.code, error=err.message, items=len(failed), written=len(written))
        return SaveResult(succeeded=written, failed=failed)

    @staticmethod
    def _save_failed(ids: List[str], err: PersistenceError) -> SaveResult:
        log.error("persist_failed", code=err.code, error=err.message, items=len(ids))
        return SaveResult(succeeded=[], failed={i: f"{err.code}: {err.message}" for i in ids})

    @staticmethod
    def _merge_save(
        result: EvaluationResult,
        by_id: Dict[str, ItemResult],
        saved: SaveResult,
        now: datetime,
    ) -> None:
        ok = set(saved.succeeded)
        for r in result.per_item:
            if not r.changed or r.status is ItemStatus.NOT_PROCESSED:
                continue
            if r.item_id in ok and r.item_id not in saved.failed:
                r.status = ItemStatus.APPLIED
                r.applied_at = now
                result.succeeded.append(r.item_id)
                continue

            reason = saved.failed.get(r.item_id) or "write not acknowledged by store"
            r.status = ItemStatus.FAILED
            r.errors.append(
                PersistenceError(reason, meta={"itemId": r.item_id}).to_dict()
            )
            result.failed.append(r.item_id)

    @staticmethod
    def _read(name: str, fn, *args):
        try:
            return fn(*args)
        except Exception as e:
            raise FatalError(
                f"{name} failed; store unavailable",
                code="STORE_UNAVAILABLE",
                meta={"operation": name, "error": repr(e)},
            ) from e

    @staticmethod
    def _fail(result: EvaluationResult, err: FatalError) -> None:
        result.status = RunStatus.FAILED
        result.error = err.to_dict()
        result.per_item = []
        result.succeeded = []
        result.failed = []
        result.not_processed = []

    @staticmethod
    def _observe(result: EvaluationResult, seconds: float) -> None:
        apply_runs_counter.labels(status=result.status.value).inc()
        run_latency_hist.observe(seconds)
        for r in result.per_item:
            items_counter.labels(status=r.status.value).inc()
            if r.matched_rule_ids:
                rule_matches_counter.inc(len(r.matched_rule_ids))
        for w in result.warnings:
            rule_warnings_counter.labels(code=str(w.get("code") or "UNKNOWN")).inc()

    def _publish(self, result: EvaluationResult) -> None:
        if self.audit_sink is None:
            return
        try:
            self.audit_sink.publish(result)
        except Exception as e:
            # audit is fire-and-forget; the run result stands
            log.warning("audit_publish_failed", run_id=result.run_id, error=repr(e))
