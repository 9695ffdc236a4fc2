import logging
import requests

from requests.adapters import HTTPAdapter
from urllib.parse import quote

from config.settings import (
    STORAGE_URL,
    STORAGE_BUCKET,
    STORAGE_SERVICE_KEY,
    cache_control as default_cache_control,
    tile_upload_concurrency,
)
from type_defs.errors import StorageError

logger = logging.getLogger(__name__)

request_timeout = (10, 120)  # connect, read.


class StorageGateway:
    """
    Object store client for the bucket REST API.

    Every write is an upsert, so retried jobs overwrite their own artifacts
    at the same deterministic paths instead of failing or duplicating them.
    """

    def __init__(
        self,
        base_url: str = STORAGE_URL,
        bucket: str = STORAGE_BUCKET,
        service_key: str = STORAGE_SERVICE_KEY,
        pool_size: int = tile_upload_concurrency,
        session: requests.Session | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.bucket = bucket
        self.session = session or requests.Session()

        # one pooled connection per concurrent tile upload.
        adapter = HTTPAdapter(pool_connections=1, pool_maxsize=max(1, pool_size))
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

        if service_key:
            self.session.headers.update(
                {"Authorization": f"Bearer {service_key}", "apikey": service_key}
            )

    def object_url(self, path: str) -> str:
        return f"{self.base_url}/object/{self.bucket}/{quote(path.lstrip('/'))}"

    def put(
        self,
        path: str,
        data: bytes,
        content_type: str,
        cache_control: str = default_cache_control,
        upsert: bool = True,
    ):
        try:
            response = self.session.post(
                self.object_url(path),
                data=data,
                headers={
                    "Content-Type": content_type,
                    "Cache-Control": f"max-age={cache_control}",
                    "x-upsert": "true" if upsert else "false",
                },
                timeout=request_timeout,
            )

        except requests.RequestException as e:
            raise StorageError(path, None, str(e)) from e

        if not response.ok:
            raise StorageError(path, response.status_code, response.text[:320])

        logger.debug("uploaded %s (%d bytes)", path, len(data))

    def get(self, path: str) -> bytes:
        try:
            response = self.session.get(self.object_url(path), timeout=request_timeout)

        except requests.RequestException as e:
            raise StorageError(path, None, str(e)) from e

        if not response.ok:
            raise StorageError(path, response.status_code, response.text[:320])

        return response.content

    def exists(self, path: str) -> bool:
        try:
            response = self.session.head(self.object_url(path), timeout=request_timeout)

        except requests.RequestException as e:
            raise StorageError(path, None, str(e)) from e

        if response.status_code in (400, 404):
            return False

        if not response.ok:
            raise StorageError(path, response.status_code, response.reason or "")

        return True

    def put_file(self, path: str, local_path: str, content_type: str, **kwargs):
        with open(local_path, "rb") as f:
            data = f.read()

        self.put(path, data, content_type, **kwargs)

        return len(data)
