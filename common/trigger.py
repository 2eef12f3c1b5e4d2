"""
Fire-and-forget task dispatch.

Function names are the same for every backend; a continuation (compositor
self re-invocation) is just another message with a delay.
"""
import threading
from typing import Any, Dict, Optional

import httpx
import structlog

from common.config import FUNCTIONS_BASE_URL, FUNCTIONS_TOKEN, TRIGGER_TIMEOUT_SECONDS
from common.registry import Registry

log = structlog.get_logger()

TILER = "tiler"
TILE_ANALYZER = "tile_analyzer"
TILE_GENERATOR = "tile_generator"
COMPOSITOR = "compositor"
WATCHDOG = "watchdog"


class TaskTrigger:
    def invoke(self, name: str, payload: Dict[str, Any], delay_seconds: float = 0.0) -> None:
        raise NotImplementedError


class TaskQueue(TaskTrigger):
    """Durable queue kept in the registry; the local worker loop drains it."""

    def __init__(self, registry: Registry):
        self.registry = registry

    def invoke(self, name, payload, delay_seconds=0.0):
        task_id = self.registry.enqueue_task(name, payload, delay_seconds)
        log.debug("task_enqueued", task=name, task_id=task_id, delay=delay_seconds, **payload)


class HttpTaskTrigger(TaskTrigger):
    """POSTs `payload` to `{base_url}/{name}` on a background timer thread."""

    def __init__(self, base_url: Optional[str] = FUNCTIONS_BASE_URL, token: Optional[str] = FUNCTIONS_TOKEN,
                 timeout: float = TRIGGER_TIMEOUT_SECONDS):
        if not base_url:
            raise ValueError("FUNCTIONS_BASE_URL env var is required for the http trigger")
        self.base_url = base_url.rstrip("/")
        self.headers = {"Authorization": f"Bearer {token}"} if token else {}
        self.timeout = timeout

    def invoke(self, name, payload, delay_seconds=0.0):
        timer = threading.Timer(max(0.0, delay_seconds), self.post, args=(name, payload))
        timer.daemon = True
        timer.start()

    def post(self, name: str, payload: Dict[str, Any]) -> bool:
        url = f"{self.base_url}/{name}"
        try:
            res = httpx.post(url, json=payload, headers=self.headers, timeout=self.timeout)
            res.raise_for_status()
        except httpx.HTTPError as exc:
            # The watchdog re-drives anything whose invocation is lost.
            log.error("task_invoke_failed", task=name, url=url, err=str(exc))
            return False
        log.info("task_invoked", task=name, status=res.status_code)
        return True
