from pathlib import Path
from typing import Callable, Optional, Tuple, TypeVar
from urllib.parse import unquote, urlparse

import httpx
import structlog

from common.config import (
    AZURE_CONN_STR,
    GCS_PROJECT,
    LOCAL_STORE_DIR,
    PUBLIC_BASE_URL,
    STORAGE_BACKEND,
    TRIGGER_TIMEOUT_SECONDS,
)
from common.errors import TransientIOError
from common.retry import retry

# ------------------------------------------------------------------------------
# CONDITIONAL IMPORTS
# Cloud SDKs are optional; only the backend selected by STORAGE_BACKEND needs its library.
# ------------------------------------------------------------------------------

# 1. Google Cloud Storage SDK
try:
    from google.cloud import storage as gcs
    from google.api_core import exceptions as gcs_errors
except ImportError:
    gcs = None
    gcs_errors = None

# 2. Azure Blob Storage SDK
try:
    from azure.core import exceptions as azure_errors
    from azure.storage.blob import BlobServiceClient, ContentSettings
except ImportError:
    BlobServiceClient = None
    ContentSettings = None
    azure_errors = None

log = structlog.get_logger()

T = TypeVar("T")

HTTP_SCHEMES = ("http", "https")


def parse_location(location: str) -> Tuple[str, str, str]:
    """Split `scheme://bucket/path/to/obj` into (scheme, bucket, path)."""
    scheme, sep, remainder = location.partition("://")
    if not sep:
        raise ValueError(f"Invalid storage location: {location}")
    bucket, _, path = remainder.partition("/")
    if not bucket or not path:
        raise ValueError(f"Could not parse bucket or path from location: {location}")
    return scheme, bucket, unquote(path)


def _http_get(url: str) -> bytes:
    try:
        res = httpx.get(url, timeout=TRIGGER_TIMEOUT_SECONDS * 3, follow_redirects=True)
    except httpx.TransportError as exc:
        raise TransientIOError(f"GET {url}: {exc}") from exc
    if res.status_code == 404:
        raise FileNotFoundError(url)
    if res.status_code >= 500 or res.status_code == 429:
        raise TransientIOError(f"HTTP {res.status_code} for {url}")
    res.raise_for_status()
    return res.content


class ObjectStore:
    """Blob storage for tile bytes, checkpoint canvases and final images."""

    scheme = ""

    def location(self, bucket: str, path: str) -> str:
        return f"{self.scheme}://{bucket}/{path}"

    def get(self, bucket: str, path: str) -> bytes:
        return self._retry(f"get {bucket}/{path}", lambda: self._get(bucket, path))

    def put(self, bucket: str, path: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        self._retry(f"put {bucket}/{path}", lambda: self._put(bucket, path, data, content_type))
        return self.location(bucket, path)

    def delete(self, bucket: str, path: str) -> None:
        """Remove an object; a missing object is not an error."""
        try:
            self._retry(f"delete {bucket}/{path}", lambda: self._delete(bucket, path))
        except FileNotFoundError:
            log.debug("delete_missing_object", bucket=bucket, path=path)

    def public_url(self, bucket: str, path: str) -> str:
        raise NotImplementedError

    def fetch(self, location: str) -> bytes:
        """Read bytes from a storage location or an external URL."""
        parsed = urlparse(location)
        if parsed.scheme in HTTP_SCHEMES:
            return self._retry(f"fetch {location}", lambda: _http_get(location))
        if parsed.scheme == "file":
            return Path(unquote(parsed.path)).read_bytes()
        scheme, bucket, path = parse_location(location)
        if scheme != self.scheme:
            raise ValueError(f"Location {location} does not belong to the {self.scheme} store")
        return self.get(bucket, path)

    def _retry(self, label: str, fn: Callable[[], T]) -> T:
        return retry(fn, label=f"storage.{label}")

    def _get(self, bucket: str, path: str) -> bytes:
        raise NotImplementedError

    def _put(self, bucket: str, path: str, data: bytes, content_type: str) -> None:
        raise NotImplementedError

    def _delete(self, bucket: str, path: str) -> None:
        raise NotImplementedError


# ------------------------------------------------------------------------------
# LOCAL FILESYSTEM BACKEND
# Used when STORAGE_BACKEND="local". Buckets are directories under LOCAL_STORE_DIR.
# ------------------------------------------------------------------------------

class LocalObjectStore(ObjectStore):
    scheme = "local"

    def __init__(self, root: Path = LOCAL_STORE_DIR, public_base_url: Optional[str] = PUBLIC_BASE_URL):
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None

    def _file(self, bucket: str, path: str) -> Path:
        target = (self.root / bucket / path).resolve()
        if self.root.resolve() not in target.parents:
            raise ValueError(f"Object path escapes the store: {bucket}/{path}")
        return target

    def _get(self, bucket, path):
        return self._file(bucket, path).read_bytes()

    def _put(self, bucket, path, data, content_type):
        target = self._file(bucket, path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(target.name + ".part")
        tmp.write_bytes(data)
        tmp.replace(target)

    def _delete(self, bucket, path):
        self._file(bucket, path).unlink()

    def public_url(self, bucket, path):
        if self.public_base_url:
            return f"{self.public_base_url}/{bucket}/{path}"
        return self.location(bucket, path)


# ------------------------------------------------------------------------------
# GOOGLE CLOUD STORAGE (GCS) BACKEND
# Used when STORAGE_BACKEND="gcp".
# ------------------------------------------------------------------------------

class GCSObjectStore(ObjectStore):
    scheme = "gs"

    def __init__(self, project: Optional[str] = GCS_PROJECT):
        if not gcs:
            raise RuntimeError("google-cloud-storage library is not installed.")
        self.client = gcs.Client(project=project)

    def _call(self, fn: Callable[[], T]) -> T:
        try:
            return fn()
        except gcs_errors.NotFound as exc:
            raise FileNotFoundError(str(exc)) from exc
        except (gcs_errors.ServerError, gcs_errors.TooManyRequests,
                gcs_errors.RetryError, ConnectionError) as exc:
            raise TransientIOError(str(exc)) from exc

    def _get(self, bucket, path):
        return self._call(lambda: self.client.bucket(bucket).blob(path).download_as_bytes())

    def _put(self, bucket, path, data, content_type):
        blob = self.client.bucket(bucket).blob(path)
        # upload_from_string handles the creation/overwrite of the object
        self._call(lambda: blob.upload_from_string(data, content_type=content_type))

    def _delete(self, bucket, path):
        self._call(lambda: self.client.bucket(bucket).blob(path).delete())

    def public_url(self, bucket, path):
        return self.client.bucket(bucket).blob(path).public_url


# ------------------------------------------------------------------------------
# AZURE BLOB STORAGE BACKEND
# Used when STORAGE_BACKEND="azure". Buckets map to containers.
# ------------------------------------------------------------------------------

class AzureObjectStore(ObjectStore):
    scheme = "az"

    def __init__(self, conn_str: Optional[str] = AZURE_CONN_STR):
        if not BlobServiceClient:
            raise RuntimeError("azure-storage-blob library is not installed.")
        if not conn_str:
            raise ValueError("AZURE_STORAGE_CONNECTION_STRING env var is missing.")
        self.client = BlobServiceClient.from_connection_string(conn_str)

    def _call(self, fn: Callable[[], T]) -> T:
        try:
            return fn()
        except azure_errors.ResourceNotFoundError as exc:
            raise FileNotFoundError(str(exc)) from exc
        except (azure_errors.ServiceRequestError, azure_errors.ServiceResponseError) as exc:
            raise TransientIOError(str(exc)) from exc

    def _get(self, bucket, path):
        blob_client = self.client.get_blob_client(bucket, path)
        return self._call(lambda: blob_client.download_blob().readall())

    def _put(self, bucket, path, data, content_type):
        blob_client = self.client.get_blob_client(bucket, path)
        self._call(lambda: blob_client.upload_blob(
            data, overwrite=True, content_settings=ContentSettings(content_type=content_type)
        ))

    def _delete(self, bucket, path):
        blob_client = self.client.get_blob_client(bucket, path)
        self._call(lambda: blob_client.delete_blob())

    def public_url(self, bucket, path):
        return self.client.get_blob_client(bucket, path).url


def create_object_store(backend: str = STORAGE_BACKEND) -> ObjectStore:
    if backend == "local":
        return LocalObjectStore()
    elif backend == "gcp":
        return GCSObjectStore()
    elif backend == "azure":
        return AzureObjectStore()
    else:
        raise RuntimeError(f"Unsupported STORAGE_BACKEND: {backend}")
