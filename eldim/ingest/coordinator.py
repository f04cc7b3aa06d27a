"""Upload Coordinator - authenticate, encrypt, fan out, aggregate

Self-Explanatory: Takes one upload from an authenticated client to every backend.
Why: A backup only counts if every off-site copy exists; a half-written set is
worse than none because nobody notices the missing copy.
How: Per request

    Received -> Authenticating -> Rejected
                               -> Buffering -> Encrypting -> FanningOut -> Aggregating -> Responding

Fan-out runs one write per backend on a dedicated thread pool and joins all
of them before aggregating. Each write has its own timeout, counted from when
it starts; all of them share one request CancelSignal (request timeout, client
gone, shutdown). Signals are checked on every read of the ciphertext, so a
cancelled write stops mid-stream instead of finishing in the background. A
write stuck inside an SDK call past CANCEL_GRACE_SECONDS is reported as failed
and deleted if it lands later.

Aggregation is all-or-nothing. If any backend failed, the object is deleted
again from every backend that did store it and the request reports a partial
failure. Writes are never retried here; the client re-uploads.

Known limit: a crash between the writes and the compensating deletes leaves
orphaned copies behind. There is no cross-backend transaction.
"""

import asyncio
import functools
import re
import secrets
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

import structlog

from eldim.backends.base import Backend, CancelSignal, CancellableReader
from eldim.backends.registry import BackendRegistry
from eldim.config.clients import Client, ClientRegistry
from eldim.config.settings import Config
from eldim.errors import AuthenticationError, BackendWriteError
from eldim.ingest.buffer import SealedPayload, UploadBuffer, seal_upload
from eldim.security.recipients import RecipientSet
from eldim.utils.metrics import (
    auth_failures_total,
    backend_deletes_total,
    backend_writes_total,
    track_backend_write,
)

logger = structlog.get_logger()

BACKEND_TIMEOUT = "backend timeout"
REQUEST_TIMEOUT = "request timeout"
CLIENT_GONE = "client disconnected"
SHUTDOWN = "request cancelled"

# How long cancelled workers get to notice before the request answers without them
CANCEL_GRACE_SECONDS = 5.0

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class UploadState(str, Enum):
    RECEIVED = "received"
    AUTHENTICATING = "authenticating"
    BUFFERING = "buffering"
    ENCRYPTING = "encrypting"
    FANNING_OUT = "fanning_out"
    AGGREGATING = "aggregating"
    RESPONDING = "responding"


class Outcome(str, Enum):
    SUCCESS = "success"
    REJECTED = "rejected"
    PARTIAL_FAILURE = "partial_failure"


@dataclass
class BackendResult:
    backend: str
    status: str  # ok, error, timeout, cancelled
    written: bool
    duration: float = 0.0
    error: Optional[BackendWriteError] = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"


@dataclass
class UploadResult:
    outcome: Outcome
    object_key: str
    size: int
    results: List[BackendResult] = field(default_factory=list)
    compensated: List[str] = field(default_factory=list)
    cancel_reason: Optional[str] = None

    @property
    def stored_on(self) -> List[str]:
        return [r.backend for r in self.results if r.ok]

    @property
    def failed_backends(self) -> List[str]:
        return [r.backend for r in self.results if not r.ok]

    @property
    def timed_out(self) -> bool:
        return self.cancel_reason == REQUEST_TIMEOUT


def object_key(client_name: str, now: Optional[datetime] = None, token: Optional[str] = None) -> str:
    """`<client>/<UTC timestamp>-<random token>.age`

    The token makes keys from the same client unique even within one second.
    Nothing from the upload itself (filename, content) ends up in the key.
    """
    now = now or datetime.now(timezone.utc)
    token = token or secrets.token_hex(8)
    prefix = _UNSAFE_KEY_CHARS.sub("_", client_name) or "client"
    return f"{prefix}/{now.strftime('%Y%m%dT%H%M%S')}Z-{token}.age"


def _status_for(reason: Optional[str]) -> str:
    if reason in (BACKEND_TIMEOUT, REQUEST_TIMEOUT):
        return "timeout"
    return "cancelled"


class UploadCoordinator:
    """Stateless between requests; everything it holds is read-only"""

    def __init__(
        self,
        clients: ClientRegistry,
        recipients: RecipientSet,
        backends: BackendRegistry,
        max_upload_bytes: int,
        backend_timeout: float = 60,
        request_timeout: float = 300,
        spool_to_disk: bool = False,
        spool_dir: Optional[str] = None,
        max_concurrent_uploads: int = 16,
    ):
        self.clients = clients
        self.recipients = recipients
        self.backends = backends
        self.max_upload_bytes = max_upload_bytes
        self.backend_timeout = backend_timeout
        self.request_timeout = request_timeout
        self.spool_to_disk = spool_to_disk
        self.spool_dir = spool_dir
        # One thread per backend write of every upload in flight, so writes do not queue
        self.executor = ThreadPoolExecutor(
            max_workers=len(backends) * max_concurrent_uploads,
            thread_name_prefix="eldim-backend",
        )

    @classmethod
    def from_config(
        cls,
        config: Config,
        clients: ClientRegistry,
        recipients: RecipientSet,
        backends: BackendRegistry,
    ) -> "UploadCoordinator":
        return cls(
            clients=clients,
            recipients=recipients,
            backends=backends,
            max_upload_bytes=config.max_upload_bytes,
            backend_timeout=config.backendtimeout,
            request_timeout=config.requesttimeout,
            spool_to_disk=config.spooltodisk,
            spool_dir=config.spooldir,
            max_concurrent_uploads=config.maxconcurrentuploads,
        )

    def close(self):
        """Stop accepting backend work; running writes finish on their own"""
        self.executor.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------
    # Authenticating
    # ------------------------------------------------------------------

    def identify(self, source_ip: Optional[str], secret: Optional[str]) -> Optional[Client]:
        return self.clients.match(source_ip, secret)

    def authenticate(self, source_ip: Optional[str], secret: Optional[str]) -> Client:
        """Resolve the caller or raise AuthenticationError

        Matches if the secret equals a client's password or the source IP is in
        a client's address lists. Roster uniqueness means at most one client
        per criterion.
        """
        client = self.identify(source_ip, secret)
        if client is None:
            reason = "no_match" if secret else "unknown_ip"
            auth_failures_total.labels(reason=reason).inc()
            logger.warning("Upload rejected", source_ip=source_ip, reason=reason)
            raise AuthenticationError("Could not authenticate client")
        logger.info("Client authenticated", client=client.name, source_ip=source_ip)
        return client

    # ------------------------------------------------------------------
    # Buffering / Encrypting
    # ------------------------------------------------------------------

    def new_buffer(self) -> UploadBuffer:
        return UploadBuffer(
            ceiling=self.max_upload_bytes,
            spool_to_disk=self.spool_to_disk,
            spool_dir=self.spool_dir,
        )

    async def encrypt(self, buffer: UploadBuffer) -> SealedPayload:
        return await asyncio.to_thread(seal_upload, buffer, self.recipients)

    # ------------------------------------------------------------------
    # Whole pipeline after authentication
    # ------------------------------------------------------------------

    async def store(
        self,
        client: Client,
        buffer: UploadBuffer,
        cancel: Optional[CancelSignal] = None,
    ) -> UploadResult:
        """Encrypt the buffered upload and replicate it to every backend"""
        cancel = cancel or CancelSignal()
        key = object_key(client.name)
        log = logger.bind(client=client.name, object_key=key, size=buffer.size)

        log.debug("Upload state", state=UploadState.ENCRYPTING.value)
        payload = await self.encrypt(buffer)
        try:
            log.debug("Upload state", state=UploadState.FANNING_OUT.value, ciphertext=payload.size)
            results = await self.fan_out(key, payload, cancel)

            log.debug("Upload state", state=UploadState.AGGREGATING.value)
            result = await self.aggregate(key, buffer.size, results)
            if cancel.is_set():
                result.cancel_reason = cancel.why()
        finally:
            payload.discard()

        if result.outcome is Outcome.SUCCESS:
            log.info("Upload stored", backends=result.stored_on)
        else:
            log.error(
                "Upload failed",
                failed=result.failed_backends,
                compensated=result.compensated,
                reason=result.cancel_reason,
            )
        return result

    # ------------------------------------------------------------------
    # FanningOut
    # ------------------------------------------------------------------

    async def fan_out(self, key: str, payload: SealedPayload, cancel: CancelSignal) -> List[BackendResult]:
        """Write to all backends concurrently and wait for every one of them"""
        loop = asyncio.get_running_loop()
        workers = [
            loop.run_in_executor(self.executor, self._write, backend, key, payload, cancel.child())
            for backend in self.backends
        ]

        try:
            _, pending = await asyncio.wait(workers, timeout=self.request_timeout)
            if pending:
                cancel.set(REQUEST_TIMEOUT)
                results = await self._join(key, workers, cancel.why())
            else:
                results = [w.result() for w in workers]
        except asyncio.CancelledError:
            cancel.set(SHUTDOWN)
            results = await asyncio.shield(self._join(key, workers, cancel.why()))
            landed = [b for b, r in zip(self.backends, results) if r.written]
            await asyncio.shield(self._compensate(key, landed))
            raise

        for r in results:
            backend_writes_total.labels(backend=r.backend, result=r.status).inc()
        return results

    async def _join(self, key: str, workers: list, reason: str) -> List[BackendResult]:
        """Wait a bounded time for cancelled workers to notice their signal

        A worker still inside an SDK call after the grace period is reported as
        failed; if its write lands later anyway, it is deleted then.
        """
        _, stuck = await asyncio.wait(workers, timeout=CANCEL_GRACE_SECONDS)
        results = []
        for backend, worker in zip(self.backends, workers):
            if worker not in stuck:
                results.append(worker.result())
                continue
            name = backend.name()
            logger.error("Backend write did not stop after cancellation", backend=name, object_key=key)
            worker.add_done_callback(functools.partial(self._reap, backend, key))
            results.append(
                BackendResult(
                    name,
                    _status_for(reason),
                    written=False,
                    error=BackendWriteError(name, "write did not stop after cancellation"),
                )
            )
        return results

    def _reap(self, backend: Backend, key: str, worker: asyncio.Future):
        """Roll back a write that landed after its request had already answered"""
        if worker.cancelled() or not worker.result().written:
            return
        try:
            self.executor.submit(self._delete, backend, key)
        except RuntimeError:
            logger.error("Orphaned copy left, executor is shut down", backend=backend.name(), object_key=key)

    def _write(self, backend: Backend, key: str, payload: SealedPayload, signal: CancelSignal) -> BackendResult:
        """Runs in a worker thread; never raises

        The backend timeout starts here, not at submission, so time spent
        queued for a thread does not count against the backend.
        """
        name = backend.name()
        if signal.is_set():
            failure = BackendWriteError(name, f"not started, {signal.why()}")
            return BackendResult(name, _status_for(signal.why()), written=False, error=failure)

        timer = threading.Timer(self.backend_timeout, signal.set, args=(BACKEND_TIMEOUT,))
        timer.daemon = True
        timer.start()
        start = time.monotonic()
        try:
            with CancellableReader(payload.open(), signal) as stream, track_backend_write(name):
                backend.put(key, stream, payload.size)
        except Exception as e:
            if signal.is_set():
                status = _status_for(signal.why())
            else:
                status = "error"
            failure = BackendWriteError(name, str(e) or type(e).__name__)
            logger.warning("Backend write failed", backend=name, status=status, error=failure.message)
            return BackendResult(name, status, written=False, duration=time.monotonic() - start, error=failure)
        finally:
            timer.cancel()

        duration = time.monotonic() - start
        if signal.is_set():
            # Finished, but only after the deadline; it still has to be rolled back
            failure = BackendWriteError(name, f"finished after {signal.why()}")
            return BackendResult(name, _status_for(signal.why()), written=True, duration=duration, error=failure)
        return BackendResult(name, "ok", written=True, duration=duration)

    # ------------------------------------------------------------------
    # Aggregating
    # ------------------------------------------------------------------

    async def aggregate(self, key: str, size: int, results: List[BackendResult]) -> UploadResult:
        """All-or-nothing: any failure rolls back every copy that was written"""
        if all(r.ok for r in results):
            return UploadResult(Outcome.SUCCESS, key, size, results)

        landed = [b for b, r in zip(self.backends, results) if r.written]
        compensated = await asyncio.shield(self._compensate(key, landed))
        return UploadResult(Outcome.PARTIAL_FAILURE, key, size, results, compensated=compensated)

    async def _compensate(self, key: str, backends: List[Backend]) -> List[str]:
        """Best-effort delete of `key`; returns the backends where it worked"""
        if not backends:
            return []
        loop = asyncio.get_running_loop()
        deletes = [loop.run_in_executor(self.executor, self._delete, b, key) for b in backends]
        outcomes = await asyncio.gather(*deletes)
        return [b.name() for b, ok in zip(backends, outcomes) if ok]

    def _delete(self, backend: Backend, key: str) -> bool:
        name = backend.name()
        try:
            backend.delete(key)
        except Exception as e:
            backend_deletes_total.labels(backend=name, result="error").inc()
            logger.error("Compensating delete failed, orphaned copy left", backend=name, object_key=key, error=str(e))
            return False
        backend_deletes_total.labels(backend=name, result="ok").inc()
        logger.info("Compensating delete done", backend=name, object_key=key)
        return True
