"""eldim Configuration - the main YAML file

Self-Explanatory: Load the config file once at startup and validate it.
Why: eldim must never start half-configured; the first bad value stops it.
How: PyYAML for parsing, pydantic for shape/types, then an ordered
validate_config() that raises on the first problem and names the offending entry.

The returned Config is frozen. Changing anything means a restart.
"""

import os
import re
from typing import List, Optional

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as SchemaError

from eldim.backends.gcs import GCSBackendConfig
from eldim.backends.s3 import S3BackendConfig
from eldim.backends.swift import SwiftBackendConfig
from eldim.config.clients import ClientConfig, load_client_roster, validate_roster
from eldim.errors import ConfigurationError, ValidationError
from eldim.security.recipients import RecipientSet

logger = structlog.get_logger()

DEFAULT_CONFIG_PATH = "/etc/eldim/eldim.yml"

METRICS_CREDENTIAL = re.compile(r"^[a-zA-Z0-9]{20,128}$")


class EncryptionConfig(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    age_id: List[str] = Field(default_factory=list, alias="age-id")
    age_ssh: List[str] = Field(default_factory=list, alias="age-ssh")


class Config(BaseModel):
    """Process-wide settings, immutable once loaded"""

    model_config = ConfigDict(frozen=True)

    # Web server
    listenport: int = 31337
    servertokens: bool = False
    maxuploadram: int = 0  # MiB held in memory per upload
    spooltodisk: bool = False
    spooldir: Optional[str] = None
    backendtimeout: float = 60
    requesttimeout: float = 300
    maxconcurrentuploads: int = 16

    # TLS
    tlschain: str = ""
    tlskey: str = ""

    # Backends
    swiftbackends: List[SwiftBackendConfig] = Field(default_factory=list)
    gcsbackends: List[GCSBackendConfig] = Field(default_factory=list)
    s3backends: List[S3BackendConfig] = Field(default_factory=list)

    # Clients
    clientfile: str = ""

    # Encryption
    encryptionkey: str = ""  # Deprecated since v0.6.0, must stay empty
    encryption: EncryptionConfig = Field(default_factory=EncryptionConfig)

    # Prometheus
    prometheusenabled: bool = False
    prometheusauthuser: str = ""
    prometheusauthpass: str = ""

    @field_validator("swiftbackends", "gcsbackends", "s3backends", mode="before")
    @classmethod
    def _none_is_empty(cls, v):
        return [] if v is None else v

    @property
    def max_upload_bytes(self) -> int:
        return self.maxuploadram * 1024 * 1024

    def backend_count(self) -> int:
        return len(self.swiftbackends) + len(self.gcsbackends) + len(self.s3backends)

    def validate_config(self) -> List[ClientConfig]:
        """Validate everything, in order, raising on the first error

        Returns the parsed client roster so callers don't read the file twice.
        """
        # Listening port
        if self.listenport < 0:
            raise ValidationError("TCP Listening Port must be positive number")
        if self.listenport > 65535:
            raise ValidationError("TCP Listening Port must be below 65535")

        # TLS material
        _check_readable(self.tlschain, "TLS Chain File")
        _check_readable(self.tlskey, "TLS Key File")

        # Backends, each on its own
        for label, entries in (
            ("OpenStack Swift", self.swiftbackends),
            ("Google Cloud Storage", self.gcsbackends),
            ("S3", self.s3backends),
        ):
            for b in entries:
                try:
                    b.check()
                except ValueError as e:
                    raise ValidationError(
                        f"Failed to validate {label} Backend '{b.display_name()}': {e}"
                    )

        if self.backend_count() == 0:
            raise ValidationError("eldim needs at least one backend to operate, 0 found")

        # Upload memory ceiling and timeouts
        if self.maxuploadram <= 0:
            raise ValidationError("Maximum Upload RAM must be a positive number")
        if self.spooldir and not os.path.isdir(self.spooldir):
            raise ValidationError(f"Spool directory does not exist: {self.spooldir}")
        if self.backendtimeout <= 0:
            raise ValidationError("Backend timeout must be a positive number of seconds")
        if self.requesttimeout < self.backendtimeout:
            raise ValidationError("Request timeout cannot be shorter than the backend timeout")
        if self.maxconcurrentuploads <= 0:
            raise ValidationError("Maximum concurrent uploads must be a positive number")

        # Encryption
        if self.encryptionkey != "":
            raise ValidationError(
                "Use of encryption key is deprecated since v0.6.0. Please consult the docs"
            )
        self.recipients()

        # Prometheus
        if self.prometheusenabled:
            if self.prometheusauthuser == "":
                raise ValidationError(
                    "You need to set the prometheusauthuser in the configuration file. "
                    "eldim only works with HTTP Basic Auth for Prometheus Metrics"
                )
            if not METRICS_CREDENTIAL.match(self.prometheusauthuser):
                raise ValidationError(
                    "The prometheusauthuser must contain a-z, A-Z, and 0-9, "
                    "and must be 20-128 characters long"
                )
            if self.prometheusauthpass == "":
                raise ValidationError(
                    "You need to set the prometheusauthpass in the configuration file. "
                    "eldim only works with HTTP Basic Auth for Prometheus Metrics"
                )
            if not METRICS_CREDENTIAL.match(self.prometheusauthpass):
                raise ValidationError(
                    "The prometheusauthpass must contain a-z, A-Z, and 0-9, "
                    "and must be 20-128 characters long"
                )

        # Clients
        clients = load_client_roster(self.clientfile)
        validate_roster(clients)
        return clients

    def recipients(self) -> RecipientSet:
        return RecipientSet.parse(self.encryption.age_id, self.encryption.age_ssh)


def _check_readable(path: str, label: str):
    if path == "":
        raise ValidationError(f"{label} is required. eldim works only with HTTPS")
    try:
        with open(path, "rb"):
            pass
    except OSError as e:
        raise ValidationError(f"Failed to open {label}: {e}")


def parse_config(text: str) -> Config:
    """Parse YAML text into a Config (shape only, not validated)"""
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Could not parse the YAML configuration file: {e}")
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigurationError("Could not parse the YAML configuration file: expected a mapping")
    try:
        return Config(**raw)
    except SchemaError as e:
        # pydantic collects every problem; report only the first one
        first = e.errors()[0]
        field = ".".join(str(p) for p in first["loc"])
        raise ConfigurationError(f"Invalid value for '{field}': {first['msg']}")


def load_config(path: str = DEFAULT_CONFIG_PATH) -> Config:
    """Read the config file from disk"""
    try:
        with open(path, "r") as f:
            text = f.read()
    except OSError as e:
        raise ConfigurationError(f"Could not open configuration file: {e}")
    config = parse_config(text)
    logger.info("Configuration file loaded", path=path)
    return config
