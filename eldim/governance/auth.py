"""Governance Auth - who is calling

Self-Explanatory: Credential extraction for uploads, Basic Auth for /metrics.
How: FastAPI dependencies, same as every other endpoint guard.

Upload clients are identified by
- their shared secret: `Authorization: Bearer <password>` (or the `password`
  form field, checked once the form is parsed), or
- the peer address of the TLS connection. Forwarding headers such as
  X-Forwarded-For are ignored; eldim is meant to be reached directly.
"""

import secrets
from typing import Optional

import structlog
from fastapi import Depends, Header, HTTPException, Request
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from eldim.utils.metrics import metrics_auth_failures_total

logger = structlog.get_logger()

METRICS_REALM = "Prometheus Metrics"

metrics_basic = HTTPBasic(realm=METRICS_REALM, auto_error=False)


def bearer_secret(authorization: Optional[str] = Header(None)) -> Optional[str]:
    """Pull the shared secret out of an `Authorization: Bearer ...` header

    Anything else (missing header, other scheme) counts as no secret; the
    caller may still be known by IP.
    """
    if not authorization:
        return None
    parts = authorization.split(None, 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


def source_ip(request: Request) -> Optional[str]:
    if request.client is None:
        return None
    return request.client.host


def require_metrics_auth(
    request: Request,
    credentials: Optional[HTTPBasicCredentials] = Depends(metrics_basic),
):
    """Gate /metrics behind the configured Basic Auth pair (constant-time compare)"""
    config = request.app.state.config
    if credentials is not None:
        user_ok = secrets.compare_digest(
            credentials.username.encode("utf-8"), config.prometheusauthuser.encode("utf-8")
        )
        pass_ok = secrets.compare_digest(
            credentials.password.encode("utf-8"), config.prometheusauthpass.encode("utf-8")
        )
        if user_ok and pass_ok:
            return

    metrics_auth_failures_total.inc()
    logger.warning("Metrics auth failed", source_ip=source_ip(request))
    raise HTTPException(
        status_code=401,
        detail="Unauthorized",
        headers={"WWW-Authenticate": f'Basic realm="{METRICS_REALM}"'},
    )
