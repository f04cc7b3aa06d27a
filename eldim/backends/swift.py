"""OpenStack Swift backend

Keystone v3 auth via python-swiftclient. Objects can be given a server-side
expiry (X-Delete-After) so old backups age out without a cleanup job.
"""

import threading
from typing import BinaryIO, Dict, Optional

import structlog
from pydantic import BaseModel
from swiftclient.client import Connection
from swiftclient.exceptions import ClientException

logger = structlog.get_logger()


class SwiftBackendConfig(BaseModel):
    name: str = ""
    username: str = ""
    apikey: str = ""
    authurl: str = ""
    region: str = ""
    container: str = ""
    tenant: Optional[str] = None
    domain: str = "Default"
    expireseconds: int = 0

    def display_name(self) -> str:
        return self.name or "Unnamed Swift Backend"

    def check(self):
        """Static checks on the config entry; raises ValueError on the first problem"""
        if not self.name:
            raise ValueError("Backend has no name")
        if not self.username:
            raise ValueError("Swift username is required")
        if not self.apikey:
            raise ValueError("Swift API key is required")
        if not self.authurl.startswith(("https://", "http://")):
            raise ValueError("Swift auth URL must be an http(s) URL")
        if not self.region:
            raise ValueError("Swift region is required")
        if not self.container:
            raise ValueError("Swift container is required")
        if self.expireseconds < 0:
            raise ValueError("expireseconds cannot be negative")


class SwiftBackend:
    """One Swift container"""

    protocol = "swift"

    def __init__(self, config: SwiftBackendConfig, timeout: float = 60):
        self.config = config
        self.timeout = timeout
        # swiftclient connections are not thread-safe; keep one per worker thread
        self._local = threading.local()

    def _connection(self) -> Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            os_options = {
                "region_name": self.config.region,
                "user_domain_name": self.config.domain,
                "project_domain_name": self.config.domain,
            }
            if self.config.tenant:
                os_options["project_name"] = self.config.tenant
            conn = Connection(
                authurl=self.config.authurl,
                user=self.config.username,
                key=self.config.apikey,
                auth_version="3",
                os_options=os_options,
                timeout=self.timeout,
                retries=0,
            )
            self._local.conn = conn
        return conn

    def name(self) -> str:
        return self.config.display_name()

    def validate(self) -> None:
        """Authenticate and make sure the container exists"""
        self._connection().head_container(self.config.container)
        logger.info("Swift backend ready", backend=self.name(), container=self.config.container)

    def put(self, key: str, stream: BinaryIO, size: int) -> None:
        headers: Dict[str, str] = {}
        if self.config.expireseconds > 0:
            headers["X-Delete-After"] = str(self.config.expireseconds)
        self._connection().put_object(
            self.config.container,
            key,
            contents=stream,
            content_length=size,
            content_type="application/octet-stream",
            headers=headers,
        )

    def delete(self, key: str) -> None:
        try:
            self._connection().delete_object(self.config.container, key)
        except ClientException as e:
            if e.http_status == 404:
                return
            raise
