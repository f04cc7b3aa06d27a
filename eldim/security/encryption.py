"""Envelope Encryption - age multi-recipient sealing

Self-Explanatory: Turns an upload into one age ciphertext readable by any configured recipient.
Why: Backends are third-party stores; they must only ever see ciphertext.
How: pyrage (age). A fresh file key per upload encrypts the body in chunks and
is wrapped once per recipient in the header. Works stream to stream, so memory
use does not grow with the payload.

Rotation: Changing recipients only affects new uploads. Old objects stay
readable by whoever was configured when they were written.
"""

from typing import BinaryIO, Sequence

import pyrage
import structlog

from eldim.security.recipients import RecipientSet
from eldim.utils.metrics import encryption_operations_total

logger = structlog.get_logger()


def seal(plaintext: BinaryIO, ciphertext: BinaryIO, recipients: RecipientSet) -> None:
    """Encrypt `plaintext` into `ciphertext` for every recipient

    Both arguments are binary file objects; `plaintext` is read until EOF.
    Blocking, so call it from a worker thread inside request handlers.

    Raises:
        ValueError: empty recipient set (never produce unreadable output)
    """
    if len(recipients) == 0:
        raise ValueError("Refusing to encrypt for an empty recipient set")
    try:
        pyrage.encrypt_io(plaintext, ciphertext, recipients.as_list())
    except Exception:
        encryption_operations_total.labels(operation="encrypt", result="error").inc()
        raise
    encryption_operations_total.labels(operation="encrypt", result="ok").inc()


def open_envelope(ciphertext: BinaryIO, plaintext: BinaryIO, identities: Sequence) -> None:
    """Decrypt an eldim object with one or more private identities

    Not used by the server (it never holds identities); restore tooling and
    tests use it. Raises pyrage.DecryptError if no identity matches.
    """
    pyrage.decrypt_io(ciphertext, plaintext, list(identities))
    encryption_operations_total.labels(operation="decrypt", result="ok").inc()
