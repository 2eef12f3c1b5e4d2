from functools import lru_cache

from common.config import REGISTRY_PATH, STORAGE_BACKEND, TRIGGER_BACKEND
from common.registry import Registry
from common.storage import ObjectStore, create_object_store
from common.trigger import HttpTaskTrigger, TaskQueue, TaskTrigger


@lru_cache(maxsize=None)
def get_registry() -> Registry:
    return Registry(REGISTRY_PATH)


@lru_cache(maxsize=None)
def get_store() -> ObjectStore:
    return create_object_store(STORAGE_BACKEND)


@lru_cache(maxsize=None)
def get_trigger() -> TaskTrigger:
    if TRIGGER_BACKEND == "queue":
        return TaskQueue(get_registry())
    elif TRIGGER_BACKEND == "http":
        return HttpTaskTrigger()
    else:
        raise RuntimeError(f"Unsupported TRIGGER_BACKEND: {TRIGGER_BACKEND}")
