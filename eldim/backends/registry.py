"""Backend Registry - every configured store as one flat list

Built once at startup from the validated config. The coordinator iterates it
without caring which protocol each entry speaks.
"""

from collections import Counter
from typing import Dict, Iterator, List

import structlog

from eldim.backends.base import Backend
from eldim.backends.gcs import GCSBackend
from eldim.backends.s3 import S3Backend
from eldim.backends.swift import SwiftBackend
from eldim.config.settings import Config
from eldim.errors import ConfigurationError

logger = structlog.get_logger()


class BackendRegistry:
    """Read-only collection of connected backends"""

    def __init__(self, backends: List[Backend]):
        if not backends:
            raise ConfigurationError("eldim needs at least one backend to operate, 0 found")
        self._backends = tuple(backends)

    @classmethod
    def from_config(cls, config: Config) -> "BackendRegistry":
        """Instantiate every backend in config order (Swift, GCS, S3)

        SDK clients parse credentials and endpoints on construction; a failure
        there is a configuration error naming the backend.
        """
        backends: List[Backend] = []
        for backend_cls, entries in (
            (SwiftBackend, config.swiftbackends),
            (GCSBackend, config.gcsbackends),
            (S3Backend, config.s3backends),
        ):
            for entry in entries:
                try:
                    backends.append(backend_cls(entry, timeout=config.backendtimeout))
                except Exception as e:
                    raise ConfigurationError(
                        f"Failed to set up {backend_cls.protocol} backend '{entry.display_name()}': {e}"
                    ) from e
        return cls(backends)

    def validate(self):
        """Connect to each backend once; the first failure aborts startup"""
        for backend in self._backends:
            try:
                backend.validate()
            except Exception as e:
                raise ConfigurationError(
                    f"Failed to connect to {backend.protocol} backend '{backend.name()}': {e}"
                ) from e
        logger.info("All backends validated", count=len(self._backends))

    def by_protocol(self) -> Dict[str, int]:
        return dict(Counter(b.protocol for b in self._backends))

    def names(self) -> List[str]:
        return [b.name() for b in self._backends]

    def __iter__(self) -> Iterator[Backend]:
        return iter(self._backends)

    def __len__(self) -> int:
        return len(self._backends)
