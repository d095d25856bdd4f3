import logging
import os
import signal
import socket
import time
from concurrent.futures import ThreadPoolExecutor
from threading import Event
from typing import Any

from listing_ops.core.config import settings
from listing_ops.core.database import init_db
from listing_ops.core.exceptions import JobStoreUnavailableError
from listing_ops.core.logging_config import configure_logging
from listing_ops.services.job_executor import JobOutcome, execute_job
from listing_ops.services.job_store import claim_jobs, recover_stale_running_jobs
from listing_ops.services.triggers import enqueue_due_market_syncs

_LOGGER = logging.getLogger(__name__)


def worker_id_for(slot: int) -> str:
    prefix = str(settings.worker_id_prefix or "worker")
    return f"{prefix}-{socket.gethostname()}-{os.getpid()}-{int(slot)}"


def run_once(worker_id: str, batch_size: int | None = None) -> list[JobOutcome]:
    """Claim one batch and execute it sequentially on the calling thread."""
    size = max(int(batch_size or settings.worker_batch_size), 1)
    claimed = claim_jobs(size, worker_id=worker_id)
    outcomes: list[JobOutcome] = []
    for job in claimed:
        outcomes.append(execute_job(int(job.id), worker_id=worker_id))
    return outcomes


def _worker_loop(worker_id: str, stop_event: Event) -> int:
    poll_interval = max(float(settings.worker_poll_interval_seconds), 0.1)
    processed = 0
    _LOGGER.info("worker_loop_start worker_id=%s poll_interval=%s", worker_id, poll_interval)
    while not stop_event.is_set():
        try:
            outcomes = run_once(worker_id)
        except JobStoreUnavailableError as exc:
            _LOGGER.warning("worker_store_unavailable worker_id=%s error=%s", worker_id, exc)
            stop_event.wait(poll_interval)
            continue
        processed += len(outcomes)
        if not outcomes:
            stop_event.wait(poll_interval)
    _LOGGER.info("worker_loop_stop worker_id=%s processed=%s", worker_id, processed)
    return processed


def _run_scheduler_tick(state: dict[str, float]) -> None:
    now = time.monotonic()
    if now >= state["next_stale_recovery_at"]:
        started = time.perf_counter()
        try:
            recovered = recover_stale_running_jobs()
        except JobStoreUnavailableError as exc:
            _LOGGER.warning("worker_stale_recovery_failed error=%s", exc)
        else:
            if recovered:
                _LOGGER.info(
                    "worker_stale_recovery recovered=%s elapsed_ms=%s",
                    recovered,
                    int((time.perf_counter() - started) * 1000),
                )
        state["next_stale_recovery_at"] = now + max(float(settings.job_stale_recovery_interval_seconds), 5.0)

    if settings.market_sync_auto_enqueue and now >= state["next_market_sync_at"]:
        try:
            enqueue_due_market_syncs()
        except JobStoreUnavailableError as exc:
            _LOGGER.warning("worker_market_sync_enqueue_failed error=%s", exc)
        state["next_market_sync_at"] = now + max(float(settings.market_sync_scheduler_interval_seconds), 10.0)


def run() -> None:
    configure_logging()
    init_db()
    concurrency = max(int(settings.worker_concurrency), 1)
    stop_event = Event()

    def _request_stop(signum: int, _frame: Any) -> None:
        _LOGGER.info("worker_stop_requested signal=%s", signum)
        stop_event.set()

    signal.signal(signal.SIGTERM, _request_stop)
    signal.signal(signal.SIGINT, _request_stop)

    started_at = time.monotonic()
    state = {"next_stale_recovery_at": started_at, "next_market_sync_at": started_at}
    worker_ids = [worker_id_for(slot) for slot in range(concurrency)]
    _LOGGER.info("worker_start concurrency=%s worker_ids=%s", concurrency, ",".join(worker_ids))

    with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="job-worker") as pool:
        futures = [pool.submit(_worker_loop, worker_id, stop_event) for worker_id in worker_ids]
        while not stop_event.is_set():
            _run_scheduler_tick(state)
            if any(future.done() for future in futures):
                for future in futures:
                    if future.done() and future.exception() is not None:
                        _LOGGER.error("worker_thread_crashed error=%s", future.exception())
                stop_event.set()
                break
            stop_event.wait(1.0)

    _LOGGER.info("worker_stopped processed=%s", sum(future.result() for future in futures if future.exception() is None))


if __name__ == "__main__":
    run()
