"""Upload Router - POST /api/v1/file/upload/

Multipart form fields:
- password:  client secret, if not sent as a Bearer token (optional; must come
             before the file part)
- filename:  original file name, logged only (optional)
- file:      the payload (required)

The body is parsed as it streams in. Callers not known by header or IP get at
most FORM_OVERHEAD bytes to present a password, and no file byte is buffered
before the caller is authenticated. Without the spool-to-disk policy the body
is cut off as soon as it passes the upload ceiling.

Returns 200 with the object key once every backend has the encrypted copy,
otherwise a structured error (see eldim.errors).
"""

import asyncio
from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from starlette.requests import ClientDisconnect

from eldim.backends.base import CancelSignal
from eldim.errors import EncodingError, PartialFailureError, ResourceExhaustionError, UploadTimeoutError
from eldim.governance.auth import bearer_secret, source_ip
from eldim.ingest.coordinator import CLIENT_GONE, Outcome, UploadCoordinator, UploadState
from eldim.ingest.form import UploadForm
from eldim.utils.metrics import record_outcome, record_upload

router = APIRouter()
logger = structlog.get_logger()

FORM_OVERHEAD = 1024 * 1024  # multipart boundaries and small fields
DISCONNECT_POLL_SECONDS = 0.5


class UploadResponse(BaseModel):
    status: str
    object_key: str
    size: int
    backends: List[str]


async def _watch_disconnect(request: Request, cancel: CancelSignal):
    """Fire the request's cancel signal if the client goes away mid-upload"""
    while not cancel.is_set():
        if await request.is_disconnected():
            logger.warning("Client disconnected during upload", source_ip=source_ip(request))
            cancel.set(CLIENT_GONE)
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


def _body_limit(coordinator: UploadCoordinator) -> Optional[int]:
    if coordinator.spool_to_disk:
        return None
    return coordinator.max_upload_bytes + FORM_OVERHEAD


def _too_large(coordinator: UploadCoordinator) -> ResourceExhaustionError:
    return ResourceExhaustionError(
        f"Upload exceeds the {coordinator.max_upload_bytes // (1024 * 1024)} MiB in-memory limit"
    )


@router.post("/api/v1/file/upload/", response_model=UploadResponse)
async def upload_file(request: Request, secret: Optional[str] = Depends(bearer_secret)):
    """Authenticate, buffer, encrypt and replicate one file"""
    coordinator: UploadCoordinator = request.app.state.coordinator
    peer = source_ip(request)
    limit = _body_limit(coordinator)

    # Authenticating: header secret and peer IP are known before the body is read
    client = coordinator.identify(peer, secret)
    content_type = request.headers.get("content-type", "")
    if client is None and (secret or not content_type.startswith("multipart/form-data")):
        coordinator.authenticate(peer, secret)

    declared = request.headers.get("content-length", "")
    if limit is not None and declared.isdigit() and int(declared) > limit:
        raise _too_large(coordinator)

    form = UploadForm(content_type)
    received = 0
    with coordinator.new_buffer() as buffer:
        try:
            async for chunk in request.stream():
                received += len(chunk)
                if limit is not None and received > limit:
                    raise _too_large(coordinator)
                if client is None and received > FORM_OVERHEAD:
                    # No password within the form preamble; nothing more is read
                    coordinator.authenticate(peer, form.password())

                file_data = form.feed(chunk)
                if client is None and (form.password() or form.file_started):
                    client = coordinator.authenticate(peer, form.password())
                for data in file_data:
                    buffer.write(data)
        except ClientDisconnect:
            raise EncodingError("Client disconnected before the upload was complete")

        form.close()
        if client is None:
            client = coordinator.authenticate(peer, form.password())

        filename = form.fields.get("filename") or form.filename
        log = logger.bind(client=client.name, filename=filename)
        log.debug("Upload state", state=UploadState.BUFFERING.value, size=buffer.size)

        cancel = CancelSignal()
        watcher = asyncio.create_task(_watch_disconnect(request, cancel))
        try:
            result = await coordinator.store(client, buffer, cancel)
        finally:
            watcher.cancel()

    log.debug("Upload state", state=UploadState.RESPONDING.value, outcome=result.outcome.value)
    if result.outcome is Outcome.SUCCESS:
        record_upload(client.name, result.size)
        record_outcome(Outcome.SUCCESS.value)
        return UploadResponse(
            status=Outcome.SUCCESS.value,
            object_key=result.object_key,
            size=result.size,
            backends=result.stored_on,
        )

    error_cls = UploadTimeoutError if result.timed_out else PartialFailureError
    raise error_cls(
        f"Upload was not stored on every backend ({len(result.failed_backends)} failed)",
        failed_backends=result.failed_backends,
        compensated_backends=result.compensated,
    )
