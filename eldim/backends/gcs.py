"""Google Cloud Storage backend

Authenticates with a service-account JSON file from the config.
"""

import os
from typing import BinaryIO

import structlog
from google.api_core.exceptions import NotFound
from google.cloud import storage
from pydantic import BaseModel

logger = structlog.get_logger()


class GCSBackendConfig(BaseModel):
    name: str = ""
    bucketname: str = ""
    credsfile: str = ""

    def display_name(self) -> str:
        return self.name or "Unnamed GCS Backend"

    def check(self):
        if not self.name:
            raise ValueError("Backend has no name")
        if not self.bucketname:
            raise ValueError("GCS bucket name is required")
        if not self.credsfile:
            raise ValueError("GCS credentials file is required")
        if not os.access(self.credsfile, os.R_OK):
            raise ValueError(f"Cannot read GCS credentials file: {self.credsfile}")


class GCSBackend:
    """One GCS bucket"""

    protocol = "gcs"

    def __init__(self, config: GCSBackendConfig, timeout: float = 60):
        self.config = config
        self.timeout = timeout
        self.storage_client = storage.Client.from_service_account_json(config.credsfile)
        self.bucket = self.storage_client.bucket(config.bucketname)

    def name(self) -> str:
        return self.config.display_name()

    def validate(self) -> None:
        """Fetch bucket metadata; fails if the bucket is missing or access is denied"""
        self.bucket.reload(timeout=self.timeout)
        logger.info("GCS backend ready", backend=self.name(), bucket=self.config.bucketname)

    def put(self, key: str, stream: BinaryIO, size: int) -> None:
        blob = self.bucket.blob(key)
        blob.upload_from_file(
            stream,
            size=size,
            content_type="application/octet-stream",
            timeout=self.timeout,
        )

    def delete(self, key: str) -> None:
        try:
            self.bucket.blob(key).delete(timeout=self.timeout)
        except NotFound:
            pass
