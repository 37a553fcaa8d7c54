from __future__ import annotations

import queue
import threading
from typing import List, Optional

import structlog
from sqlalchemy.orm import sessionmaker

from lpu.engine.models import EvaluationResult
from lpu.engine.ports import AuditSink
from lpu.models.pricing import ApplyRulesAuditORM

log = structlog.get_logger("lpu.audit")


class LogAuditSink:
    """Writes a one-line summary of every run to the structured log."""

    def publish(self, result: EvaluationResult) -> None:
        log.info(
            "apply_rules_audit",
            run_id=result.run_id,
            tenant_id=result.tenant_id,
            price_list_id=result.price_list_id,
            status=result.status.value,
            affected=result.affected_item_count,
            succeeded=list(result.succeeded),
            failed=list(result.failed),
            not_processed=list(result.not_processed),
        )


class SqlAuditSink:
    """Append-only audit record per run (full result as JSON payload)."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def publish(self, result: EvaluationResult) -> None:
        with self._session_factory() as db:
            db.add(
                ApplyRulesAuditORM(
                    run_id=result.run_id,
                    tenant_id=result.tenant_id,
                    price_list_id=result.price_list_id,
                    status=result.status.value,
                    affected_item_count=result.affected_item_count,
                    payload=result.to_dict(),
                )
            )
            db.commit()


class FanOutAuditSink:
    def __init__(self, sinks: List[AuditSink]):
        self.sinks = list(sinks)

    def publish(self, result: EvaluationResult) -> None:
        for sink in self.sinks:
            try:
                sink.publish(result)
            except Exception as e:
                log.warning("audit_sink_failed", sink=type(sink).__name__, error=repr(e))


class BackgroundAuditSink:
    """
    Fire-and-forget wrapper: publish() only enqueues, a daemon worker
    thread delivers to the wrapped sink. The engine never waits on audit.
    """

    def __init__(self, inner: AuditSink, maxsize: int = 1000):
        self.inner = inner
        self._queue: "queue.Queue[Optional[EvaluationResult]]" = queue.Queue(maxsize=maxsize)
        self._thread = threading.Thread(target=self._worker_loop, daemon=True, name="lpu-audit")
        self._thread.start()

    def publish(self, result: EvaluationResult) -> None:
        try:
            self._queue.put_nowait(result)
        except queue.Full:
            log.warning("audit_queue_full", run_id=result.run_id)

    def flush(self, timeout: Optional[float] = None) -> None:
        """Block until everything queued so far is delivered (tests, shutdown)."""
        done = threading.Event()

        def _wait() -> None:
            self._queue.join()
            done.set()

        threading.Thread(target=_wait, daemon=True).start()
        done.wait(timeout)

    def close(self) -> None:
        self._queue.put(None)
        self._thread.join(timeout=5)

    def _worker_loop(self) -> None:
        while True:
            result = self._queue.get()
            try:
                if result is None:
                    return
                self.inner.publish(result)
            except Exception as e:
                log.warning("audit_delivery_failed", error=repr(e))
            finally:
                self._queue.task_done()
