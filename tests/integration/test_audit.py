import threading

from lpu.audit.logger import BackgroundAuditSink, FanOutAuditSink, LogAuditSink
from lpu.engine.models import EvaluationResult, RunStatus


class Collect:
    def __init__(self):
        self.seen = []

    def publish(self, result):
        self.seen.append(result.run_id)


class Broken:
    def publish(self, result):
        raise RuntimeError("sink down")


def _result(fixed_now, run_id="run-1"):
    return EvaluationResult(
        run_id=run_id,
        price_list_id="PL-1",
        tenant_id="t-1",
        status=RunStatus.COMPLETED,
        started_at=fixed_now,
    )


def test_fan_out_isolates_failing_sink(fixed_now):
    good = Collect()
    FanOutAuditSink([Broken(), LogAuditSink(), good]).publish(_result(fixed_now))

    assert good.seen == ["run-1"]


def test_background_sink_delivers_in_order(fixed_now):
    inner = Collect()
    sink = BackgroundAuditSink(inner)
    for i in range(5):
        sink.publish(_result(fixed_now, f"run-{i}"))
    sink.flush(timeout=5)
    sink.close()

    assert inner.seen == [f"run-{i}" for i in range(5)]


def test_background_sink_does_not_block_publisher(fixed_now):
    release = threading.Event()

    class Slow:
        def publish(self, result):
            release.wait(5)

    sink = BackgroundAuditSink(Slow(), maxsize=1)
    try:
        # first is taken by the worker, second fills the queue, third is dropped
        for i in range(3):
            sink.publish(_result(fixed_now, f"run-{i}"))
    finally:
        release.set()
        sink.flush(timeout=5)
        sink.close()


def test_background_sink_survives_inner_failure(fixed_now):
    sink = BackgroundAuditSink(Broken())
    sink.publish(_result(fixed_now))
    sink.flush(timeout=5)

    assert sink._thread.is_alive()
    sink.close()
    assert not sink._thread.is_alive()
