import logging
import requests

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from config.settings import API_URL, API_SERVICE_KEY
from type_defs.errors import MetadataStoreError

logger = logging.getLogger(__name__)

request_timeout = (10, 30)

STATUS_FIELDS = "status,progress,error_message,width,height,page_count"


class DocumentRecords:
    """
    Client for the `documents` table of the metadata store (PostgREST style).

    Every update is a single PATCH, so fields sent together land together.
    """

    def __init__(
        self,
        api_url: str = API_URL,
        service_key: str = API_SERVICE_KEY,
        table: str = "documents",
        session: requests.Session | None = None,
    ):
        self.url = f"{api_url.rstrip('/')}/{table}"
        self.session = session or requests.Session()

        if service_key:
            self.session.headers.update(
                {"Authorization": f"Bearer {service_key}", "apikey": service_key}
            )

    def get(self, document_id: str, select: str = "*") -> Optional[Dict[str, Any]]:
        try:
            response = self.session.get(
                self.url,
                params={"id": f"eq.{document_id}", "select": select},
                timeout=request_timeout,
            )
        except requests.RequestException as e:
            raise MetadataStoreError(f"Failed to fetch document {document_id}: {e}") from e

        if not response.ok:
            raise MetadataStoreError(
                f"Failed to fetch document {document_id}. Status: {response.status_code}, Body: {response.text[:320]}"
            )

        rows = response.json()
        return rows[0] if rows else None

    def update(self, document_id: str, fields: Dict[str, Any]):
        data = {**fields, "updated_at": datetime.now(timezone.utc).isoformat()}

        try:
            response = self.session.patch(
                self.url,
                params={"id": f"eq.{document_id}"},
                json=data,
                headers={"Prefer": "return=minimal"},
                timeout=request_timeout,
            )
        except requests.RequestException as e:
            raise MetadataStoreError(f"Failed to update document {document_id}: {e}") from e

        if not response.ok:
            raise MetadataStoreError(
                f"Failed to update document {document_id}. Status: {response.status_code}, Body: {response.text[:320]}"
            )

    def set_status(
        self,
        document_id: str,
        status: str,
        progress: Optional[int] = None,
        extra: Optional[Dict[str, Any]] = None,
    ):
        fields: Dict[str, Any] = {"status": status}

        if progress is not None:
            fields["progress"] = progress

        self.update(document_id, {**fields, **(extra or {})})

    def delete(self, document_id: str):
        try:
            response = self.session.delete(
                self.url, params={"id": f"eq.{document_id}"}, timeout=request_timeout
            )
        except requests.RequestException as e:
            raise MetadataStoreError(f"Failed to delete document {document_id}: {e}") from e

        if not response.ok:
            raise MetadataStoreError(
                f"Failed to delete document {document_id}. Status: {response.status_code}"
            )

    def status_of(self, document_id: str) -> Optional[Dict[str, Any]]:
        return self.get(document_id, select=STATUS_FIELDS)
