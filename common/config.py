import logging
import os
from pathlib import Path

import structlog

BASE_DIR = Path(__file__).resolve().parents[1]
DATA_DIR = Path(os.getenv("DATA_DIR", BASE_DIR / "data"))

# Storage mode: local / gcp / azure
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "local")

LOCAL_STORE_DIR = Path(os.getenv("LOCAL_STORE_DIR", DATA_DIR / "objects"))
GCS_PROJECT = os.getenv("GCS_PROJECT")
AZURE_CONN_STR = os.getenv("AZURE_STORAGE_CONNECTION_STRING")
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL")  # local backend only

OUTPUT_BUCKET = os.getenv("OUTPUT_BUCKET", "tiled-upscale-generations")
CHECKPOINT_BUCKET = os.getenv("CHECKPOINT_BUCKET", "tiled-upscale-checkpoints")

# Job/tile registry
REGISTRY_PATH = Path(os.getenv("REGISTRY_PATH", DATA_DIR / "registry.sqlite3"))

# Task trigger: queue (durable table in the registry) / http
TRIGGER_BACKEND = os.getenv("TRIGGER_BACKEND", "queue")
FUNCTIONS_BASE_URL = os.getenv("FUNCTIONS_BASE_URL")
FUNCTIONS_TOKEN = os.getenv("FUNCTIONS_TOKEN")
TRIGGER_TIMEOUT_SECONDS = float(os.getenv("TRIGGER_TIMEOUT_SECONDS", "10"))

# Tiling, in source-resolution pixels
TILE_SIZE = int(os.getenv("TILE_SIZE", "1024"))
TILE_OVERLAP = int(os.getenv("TILE_OVERLAP", "264"))
DEFAULT_UPSCALER_ENGINE = os.getenv("DEFAULT_UPSCALER_ENGINE", "enhancor_detailed")
SINGLE_SHOT_ENGINES = frozenset(
    e.strip() for e in os.getenv("SINGLE_SHOT_ENGINES", "comfyui_full,magnific_full").split(",") if e.strip()
)

# Compositor
COMPOSITOR_BATCH_SIZE = int(os.getenv("COMPOSITOR_BATCH_SIZE", "12"))
COMPOSITOR_LEASE_SECONDS = int(os.getenv("COMPOSITOR_LEASE_SECONDS", "60"))
COMPOSITOR_CONTINUE_DELAY_SECONDS = float(os.getenv("COMPOSITOR_CONTINUE_DELAY_SECONDS", "2"))
COMPOSITOR_MAX_FEATHER_PX = int(os.getenv("COMPOSITOR_MAX_FEATHER_PX", "256"))
COMPOSITOR_JPEG_QUALITY = int(os.getenv("COMPOSITOR_JPEG_QUALITY", "90"))
COMPOSITOR_MEM_LIMIT_MB = int(os.getenv("COMPOSITOR_MEM_LIMIT_MB", "2048"))

# Watchdog
WATCHDOG_LOCK_TTL_SECONDS = int(os.getenv("WATCHDOG_LOCK_TTL_SECONDS", "300"))
JOB_STALL_SECONDS = int(os.getenv("JOB_STALL_SECONDS", "900"))
TILE_FAILURE_CLEANUP_SECONDS = int(os.getenv("TILE_FAILURE_CLEANUP_SECONDS", "3600"))
ANALYSIS_STALL_SECONDS = int(os.getenv("ANALYSIS_STALL_SECONDS", "300"))
GENERATION_STALL_SECONDS = int(os.getenv("GENERATION_STALL_SECONDS", "900"))
DISPATCH_BATCH_SIZE = int(os.getenv("DISPATCH_BATCH_SIZE", "10"))
DEFAULT_CONCURRENCY_LIMIT = int(os.getenv("DEFAULT_CONCURRENCY_LIMIT", "1"))
CONCURRENCY_LIMIT_KEY = os.getenv("CONCURRENCY_LIMIT_KEY", "TILED_UPSCALE_CONCURRENCY_LIMIT")

# Bounded retry for blob/registry I/O
RETRY_ATTEMPTS = int(os.getenv("RETRY_ATTEMPTS", "3"))
RETRY_DELAY_SECONDS = float(os.getenv("RETRY_DELAY_SECONDS", "1.0"))

# Local worker loop
POLL_INTERVAL = float(os.getenv("POLL_INTERVAL", "2"))  # seconds
WATCHDOG_INTERVAL = float(os.getenv("WATCHDOG_INTERVAL", "60"))  # seconds
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Ensure dirs exist (for local mode)
if STORAGE_BACKEND == "local":
    LOCAL_STORE_DIR.mkdir(parents=True, exist_ok=True)
REGISTRY_PATH.parent.mkdir(parents=True, exist_ok=True)


def configure_logging(level: str = LOG_LEVEL) -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
    )
