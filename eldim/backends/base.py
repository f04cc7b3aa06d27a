"""Storage Backend contract

Every remote store (Swift, GCS, S3) exposes the same four calls, so the upload
coordinator never needs to know which protocol it is talking to:

- name()                     display name from the config file
- validate()                 connectivity/bucket check, run once at startup
- put(key, stream, size)     write the stream as a new object
- delete(key)                best-effort removal (compensation after a failed fan-out)

All calls are blocking (the vendor SDKs are); the coordinator runs them in
worker threads. Cancellation reaches into those threads through the stream:
readers raise UploadCancelled once the shared CancelSignal fires.
"""

import threading
from typing import BinaryIO, Optional, Protocol, runtime_checkable


class UploadCancelled(Exception):
    """Raised from inside a backend write when the request gave up on it"""


@runtime_checkable
class Backend(Protocol):
    protocol: str

    def name(self) -> str: ...

    def validate(self) -> None: ...

    def put(self, key: str, stream: BinaryIO, size: int) -> None: ...

    def delete(self, key: str) -> None: ...


class CancelSignal:
    """Thread-safe cancellation flag with an optional parent

    A child fires when it is set itself or when any ancestor fires, which lets
    one request-wide signal cover every per-backend signal below it.
    """

    def __init__(self, parent: Optional["CancelSignal"] = None):
        self._event = threading.Event()
        self._parent = parent
        self.reason: Optional[str] = None

    def child(self) -> "CancelSignal":
        return CancelSignal(parent=self)

    def set(self, reason: str = "cancelled"):
        if not self._event.is_set():
            self.reason = reason
        self._event.set()

    def is_set(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.is_set()

    def why(self) -> str:
        if self._event.is_set():
            return self.reason or "cancelled"
        if self._parent is not None:
            return self._parent.why()
        return "cancelled"


class CancellableReader:
    """Read-only file wrapper that aborts once its signal fires

    Supports seek/tell so SDKs that rewind for checksums or retries still work.
    """

    def __init__(self, raw: BinaryIO, signal: CancelSignal):
        self._raw = raw
        self._signal = signal

    def _check(self):
        if self._signal.is_set():
            raise UploadCancelled(self._signal.why())

    def read(self, size: int = -1) -> bytes:
        self._check()
        return self._raw.read(size)

    def readinto(self, buffer) -> int:
        self._check()
        return self._raw.readinto(buffer)

    def seek(self, offset: int, whence: int = 0) -> int:
        return self._raw.seek(offset, whence)

    def tell(self) -> int:
        return self._raw.tell()

    def seekable(self) -> bool:
        return True

    def readable(self) -> bool:
        return True

    def close(self):
        self._raw.close()

    @property
    def closed(self) -> bool:
        return self._raw.closed

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
