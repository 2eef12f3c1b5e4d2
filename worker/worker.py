import time
from typing import Any, Callable, Dict, Optional

import structlog

from common.config import FUNCTIONS_BASE_URL, POLL_INTERVAL, WATCHDOG_INTERVAL, configure_logging
from common.registry import Registry
from common.services import get_registry, get_store
from common.trigger import COMPOSITOR, WATCHDOG, HttpTaskTrigger, TaskQueue
from worker.compositor import Compositor
from worker.watchdog import Watchdog

log = structlog.get_logger()

Handler = Callable[[Dict[str, Any]], Any]


def build_handlers(compositor: Compositor, watchdog: Watchdog) -> Dict[str, Handler]:
    return {
        COMPOSITOR: lambda payload: compositor.composite(
            payload["parent_job_id"], lease_owner=payload.get("lease_owner"), next_index=payload.get("next_index"),
        ),
        WATCHDOG: lambda payload: watchdog.reconcile(),
    }


def drain_tasks(registry: Registry, handlers: Dict[str, Handler],
                forward: Optional[HttpTaskTrigger] = None, limit: int = 50) -> int:
    """Run every due queued task once. Returns how many messages were taken."""
    tasks = registry.claim_due_tasks(limit)
    for task in tasks:
        handler = handlers.get(task.name)
        if handler is None:
            if forward is not None:
                forward.post(task.name, task.payload)
            else:
                log.warning("task_without_handler", task=task.name, **task.payload)
            continue
        try:
            result = handler(task.payload)
            log.info("task_done", task=task.name, result=getattr(result, "value", None))
        except Exception:
            log.exception("task_failed", task=task.name, **task.payload)
    return len(tasks)


def main():
    configure_logging()
    log.info("worker_started")

    registry = get_registry()
    queue = TaskQueue(registry)
    compositor = Compositor(registry, get_store(), queue)
    watchdog = Watchdog(registry, queue)
    handlers = build_handlers(compositor, watchdog)
    # external collaborators (tiler, analyzer, generator) are reached over HTTP when configured
    forward = HttpTaskTrigger() if FUNCTIONS_BASE_URL else None

    next_watchdog = 0.0
    while True:
        if time.monotonic() >= next_watchdog:
            try:
                watchdog.reconcile()
            except Exception:
                log.exception("watchdog_pass_failed")
            next_watchdog = time.monotonic() + WATCHDOG_INTERVAL
        try:
            taken = drain_tasks(registry, handlers, forward)
        except Exception:
            log.exception("task_drain_failed")
            taken = 0
        if not taken:
            time.sleep(POLL_INTERVAL)


if __name__ == "__main__":
    main()
