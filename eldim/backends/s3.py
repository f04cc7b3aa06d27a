"""S3 backend - AWS S3 or any S3-compatible store (MinIO, Ceph, Wasabi...)

Self-Explanatory: Write encrypted uploads into one bucket.
How: Boto3 with a custom endpoint; single-threaded transfers so reads stay on the worker thread.
"""

from typing import BinaryIO

import boto3
import structlog
from boto3.s3.transfer import TransferConfig
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError
from pydantic import BaseModel

logger = structlog.get_logger()


class S3BackendConfig(BaseModel):
    name: str = ""
    endpoint: str = ""
    region: str = ""
    bucketname: str = ""
    accesskey: str = ""
    secretkey: str = ""
    usessl: bool = True

    def display_name(self) -> str:
        return self.name or "Unnamed S3 Backend"

    def endpoint_url(self) -> str:
        scheme = "https" if self.usessl else "http"
        return f"{scheme}://{self.endpoint}"

    def check(self):
        if not self.name:
            raise ValueError("Backend has no name")
        if not self.endpoint:
            raise ValueError("S3 endpoint is required")
        if "://" in self.endpoint:
            raise ValueError("S3 endpoint must not include a scheme, use usessl instead")
        if not self.region:
            raise ValueError("S3 region is required")
        if not self.bucketname:
            raise ValueError("S3 bucket name is required")
        if not self.accesskey:
            raise ValueError("S3 access key is required")
        if not self.secretkey:
            raise ValueError("S3 secret key is required")


class S3Backend:
    """One S3 bucket"""

    protocol = "s3"

    def __init__(self, config: S3BackendConfig, timeout: float = 60):
        self.config = config
        self.s3 = boto3.client(
            "s3",
            endpoint_url=config.endpoint_url(),
            region_name=config.region,
            aws_access_key_id=config.accesskey,
            aws_secret_access_key=config.secretkey,
            config=BotoConfig(
                connect_timeout=timeout,
                read_timeout=timeout,
                retries={"max_attempts": 1},
            ),
        )
        self.transfer_config = TransferConfig(use_threads=False)

    def name(self) -> str:
        return self.config.display_name()

    def validate(self) -> None:
        """HEAD the bucket: checks credentials, endpoint and bucket in one call"""
        self.s3.head_bucket(Bucket=self.config.bucketname)
        logger.info("S3 backend ready", backend=self.name(), bucket=self.config.bucketname)

    def put(self, key: str, stream: BinaryIO, size: int) -> None:
        self.s3.upload_fileobj(
            stream,
            self.config.bucketname,
            key,
            ExtraArgs={"ContentType": "application/octet-stream"},
            Config=self.transfer_config,
        )

    def delete(self, key: str) -> None:
        try:
            self.s3.delete_object(Bucket=self.config.bucketname, Key=key)
        except ClientError as e:
            if e.response["Error"]["Code"] in ("NoSuchKey", "404"):
                return
            raise
