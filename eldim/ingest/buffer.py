"""Upload buffering - bounded memory per request

UploadBuffer holds the plaintext as it arrives. Without the spool-to-disk
policy it refuses to grow past the configured ceiling (maxuploadram); with it,
bytes past the ceiling go to a temporary file instead.

SealedPayload holds the ciphertext and hands every backend its own reader, so
concurrent writers never share a file position.
"""

import io
import os
import tempfile
from typing import BinaryIO, Optional

from eldim.errors import ResourceExhaustionError
from eldim.security.encryption import seal
from eldim.security.recipients import RecipientSet


class UploadBuffer:
    def __init__(self, ceiling: int, spool_to_disk: bool = False, spool_dir: Optional[str] = None):
        self.ceiling = ceiling
        self.spool_to_disk = spool_to_disk
        self.spool_dir = spool_dir
        self.size = 0
        if spool_to_disk:
            self._file: BinaryIO = tempfile.SpooledTemporaryFile(max_size=ceiling, dir=spool_dir)
        else:
            self._file = io.BytesIO()

    def write(self, chunk: bytes):
        if not self.spool_to_disk and self.size + len(chunk) > self.ceiling:
            raise ResourceExhaustionError(
                f"Upload exceeds the {self.ceiling // (1024 * 1024)} MiB in-memory limit"
            )
        self._file.write(chunk)
        self.size += len(chunk)

    def reader(self) -> BinaryIO:
        self._file.seek(0)
        return self._file

    def close(self):
        self._file.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class SealedPayload:
    """Encrypted upload, readable any number of times"""

    def __init__(self, data: Optional[bytes] = None, path: Optional[str] = None):
        self._data = data
        self._path = path
        if data is not None:
            self.size = len(data)
        else:
            self.size = os.path.getsize(path)

    def open(self) -> BinaryIO:
        if self._data is not None:
            return io.BytesIO(self._data)
        return open(self._path, "rb")

    def discard(self):
        self._data = None
        if self._path is not None:
            try:
                os.unlink(self._path)
            except FileNotFoundError:
                pass
            self._path = None


def seal_upload(buffer: UploadBuffer, recipients: RecipientSet) -> SealedPayload:
    """Encrypt the buffered plaintext; blocking, run it off the event loop

    Ciphertext stays in memory unless the buffer itself spools to disk.
    """
    plaintext = buffer.reader()
    if not buffer.spool_to_disk:
        out = io.BytesIO()
        seal(plaintext, out, recipients)
        return SealedPayload(data=out.getvalue())

    fd, path = tempfile.mkstemp(prefix="eldim-", suffix=".age", dir=buffer.spool_dir)
    try:
        with os.fdopen(fd, "wb") as out:
            seal(plaintext, out, recipients)
    except BaseException:
        os.unlink(path)
        raise
    return SealedPayload(path=path)
