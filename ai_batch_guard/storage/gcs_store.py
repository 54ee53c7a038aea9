"""
Google Cloud Storage backend for the object store.
"""

import json
from datetime import timedelta
from typing import Any, Dict, List, Optional

from google.api_core import exceptions as gcs_exceptions
from google.cloud import storage

from ai_batch_guard.core.errors import StoreUnavailableError

from .object_store import ObjectStore

# Objects are immutable in GCS, so appends are read-modify-write guarded by
# generation preconditions and retried on conflict.
MAX_APPEND_ATTEMPTS = 5


class GCSObjectStore(ObjectStore):
    """Object store backed by a GCS bucket."""

    def __init__(self, bucket_name: str, client: Optional[storage.Client] = None):
        self.bucket_name = bucket_name
        self._client = client or storage.Client()
        self._bucket = self._client.bucket(bucket_name)

    def put_json(self, key: str, data: Dict[str, Any]) -> None:
        blob = self._bucket.blob(key)
        try:
            blob.upload_from_string(
                json.dumps(data, indent=2, sort_keys=True),
                content_type="application/json",
            )
        except gcs_exceptions.GoogleAPIError as e:
            raise StoreUnavailableError(f"Cannot write gs://{self.bucket_name}/{key}: {e}") from e

    def get_json(self, key: str) -> Optional[Dict[str, Any]]:
        blob = self._bucket.blob(key)
        try:
            return json.loads(blob.download_as_text())
        except gcs_exceptions.NotFound:
            return None
        except (gcs_exceptions.GoogleAPIError, ValueError) as e:
            raise StoreUnavailableError(f"Cannot read gs://{self.bucket_name}/{key}: {e}") from e

    def put_bytes(self, key: str, data: bytes, content_type: str) -> None:
        blob = self._bucket.blob(key)
        try:
            blob.upload_from_string(data, content_type=content_type)
        except gcs_exceptions.GoogleAPIError as e:
            raise StoreUnavailableError(f"Cannot write gs://{self.bucket_name}/{key}: {e}") from e

    def append_line(self, key: str, line: str) -> None:
        if not line.endswith("\n"):
            line += "\n"
        for _ in range(MAX_APPEND_ATTEMPTS):
            blob = self._bucket.blob(key)
            try:
                try:
                    blob.reload()
                    existing = blob.download_as_text(if_generation_match=blob.generation)
                    generation = blob.generation
                except gcs_exceptions.NotFound:
                    existing = ""
                    generation = 0
                blob.upload_from_string(
                    existing + line,
                    content_type="application/x-ndjson",
                    if_generation_match=generation,
                )
                return
            except gcs_exceptions.PreconditionFailed:
                continue
            except gcs_exceptions.GoogleAPIError as e:
                raise StoreUnavailableError(f"Cannot append to gs://{self.bucket_name}/{key}: {e}") from e
        raise StoreUnavailableError(
            f"Cannot append to gs://{self.bucket_name}/{key}: too many concurrent writers"
        )

    def read_lines(self, key: str) -> List[str]:
        blob = self._bucket.blob(key)
        try:
            text = blob.download_as_text()
        except gcs_exceptions.NotFound:
            return []
        except gcs_exceptions.GoogleAPIError as e:
            raise StoreUnavailableError(f"Cannot read gs://{self.bucket_name}/{key}: {e}") from e
        return [line for line in text.splitlines() if line.strip()]

    def signed_url(self, key: str, expires_in: float) -> str:
        blob = self._bucket.blob(key)
        try:
            return blob.generate_signed_url(
                version="v4",
                expiration=timedelta(seconds=expires_in),
                method="GET",
            )
        except gcs_exceptions.GoogleAPIError as e:
            raise StoreUnavailableError(f"Cannot sign gs://{self.bucket_name}/{key}: {e}") from e
