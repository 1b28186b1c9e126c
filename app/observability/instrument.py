from __future__ import annotations

from time import perf_counter
from typing import Callable, TypeVar

import structlog

from app.observability.metrics import MetricsRegistry, get_metrics


T = TypeVar("T")


def _run(event: str, fn: Callable[[], T], record: Callable[[float, BaseException | None], None], **fields: object) -> T:
    log = structlog.get_logger("instrument")
    start = perf_counter()
    try:
        result = fn()
    except Exception as exc:
        elapsed = perf_counter() - start
        record(elapsed, exc)
        log.exception(f"{event}_failed", duration_s=round(elapsed, 3), **fields)
        raise

    elapsed = perf_counter() - start
    record(elapsed, None)
    log.info(event, duration_s=round(elapsed, 3), **fields)
    return result


def instrument_api_call(*, operation: str, fn: Callable[[], T], metrics: MetricsRegistry | None = None) -> T:
    """Time an external API call, update metrics, and emit a structured log event."""

    m = metrics or get_metrics()
    return _run("api_call", fn, m.record_api_call, operation=operation)


def instrument_background_job(*, name: str, fn: Callable[[], T], metrics: MetricsRegistry | None = None) -> T:
    m = metrics or get_metrics()
    return _run("background_job", fn, m.record_background_job, job=name)


def instrument_file_process(
    *, name: str, size_bytes: int, fn: Callable[[], T], metrics: MetricsRegistry | None = None
) -> T:
    """Like :func:`instrument_api_call`; ``size_bytes`` is added to the processed-bytes total."""

    m = metrics or get_metrics()

    def record(elapsed: float, err: BaseException | None) -> None:
        m.record_file_process(elapsed, size_bytes, err)

    return _run("file_process", fn, record, file=name, size_bytes=size_bytes)
