"""Signature API endpoints: status, reload, listing and local uploads."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from ..core.auth import ListAuthContext, list_auth, require_list_auth
from ..exceptions import ClaException, NotReadyError
from ..schemas.signature import LocalSignatureCreate
from ..services.signature_cache import SignatureCache
from ..services.snapshot_builder import Snapshot
from .formatters import (
    censor_signatures,
    negotiate_format,
    signature_status,
    signature_to_dict,
    signatures_to_json,
    signatures_to_xml,
    snapshot_headers,
    snapshot_to_json,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["signatures"])

_XML_MEDIA_TYPE = "application/xml"


def get_cache(request: Request) -> SignatureCache:
    """The SignatureCache created at application startup."""
    return request.app.state.cache


def _reload_if_requested(cache: SignatureCache, reload: Optional[str]) -> None:
    if reload == "true":
        cache.trigger_reload(force=True)


def _published_snapshot(cache: SignatureCache, require_healthy: bool) -> Snapshot:
    """Current snapshot or 503.

    With *require_healthy* a degraded cache is refused even when an older
    snapshot is still published.
    """
    snapshot = cache.current_snapshot()
    health = cache.status()
    if snapshot is None:
        raise NotReadyError(health.reason or "Not ready")
    if require_healthy and not health.is_healthy:
        raise NotReadyError(health.reason or "Not ready")
    return snapshot


@router.get("/status", response_class=PlainTextResponse)
def get_status(cache: SignatureCache = Depends(get_cache)):
    """``OK`` while healthy, otherwise 503 with the reason."""
    health = cache.status()
    if health.is_healthy:
        return PlainTextResponse("OK")
    return PlainTextResponse(health.reason or "Not ready", status_code=503)


@router.get("/reload", response_class=PlainTextResponse)
def reload_signatures(cache: SignatureCache = Depends(get_cache)):
    """Force a reload from the CLA assistant, bypassing the file cache."""
    try:
        cache.trigger_reload(force=True)
    except ClaException as e:
        logger.error(f"Forced reload failed: {e.message}", extra={"error_code": e.error_code.value})
        return PlainTextResponse("ERROR", status_code=500)
    return PlainTextResponse("OK")


@router.get("/list")
def list_signatures(
    request: Request,
    reload: Optional[str] = Query(None, description="'true' reloads from the CLA assistant first"),
    cache: SignatureCache = Depends(get_cache),
    auth: ListAuthContext = Depends(require_list_auth),
):
    """Every signee with all their signatures, as JSON (default) or XML."""
    _reload_if_requested(cache, reload)
    snapshot = _published_snapshot(cache, require_healthy=True)
    headers = snapshot_headers(snapshot)

    if negotiate_format(request, ("json", "xml"), default="json") == "xml":
        signatures = [s for _, group in snapshot.ordered_signatories() for s in group]
        return Response(
            signatures_to_xml(signatures, snapshot.timestamp),
            media_type=_XML_MEDIA_TYPE,
            headers=headers,
        )
    return JSONResponse(snapshot_to_json(snapshot), headers=headers)


@router.get("/list/{username}")
def get_signee(
    username: str,
    request: Request,
    reload: Optional[str] = Query(None, description="'true' reloads from the CLA assistant first"),
    cache: SignatureCache = Depends(get_cache),
    auth: ListAuthContext = Depends(list_auth),
):
    """Whether *username* holds a valid CLA.

    Plain text (default) answers ``OK``, ``Revoked`` (410) or ``Not found``
    (404). JSON and XML return the signatures themselves, with the fields
    in ``CLA_AUTH_FIELDS`` removed for unauthorized callers.
    """
    _reload_if_requested(cache, reload)
    # Serves the last published snapshot even while degraded; only /list refuses stale data.
    snapshot = _published_snapshot(cache, require_healthy=False)
    headers = snapshot_headers(snapshot)

    signatures = list(snapshot.get(username))
    if not signatures:
        return PlainTextResponse("Not found", status_code=404, headers=headers)

    private_fields = request.app.state.settings.get_auth_fields()
    if private_fields and not auth.authorized:
        signatures = censor_signatures(signatures, private_fields)

    fmt = negotiate_format(request, ("text", "json", "xml"), default="text")
    if fmt == "json":
        return JSONResponse(signatures_to_json(signatures), headers=headers)
    if fmt == "xml":
        return Response(
            signatures_to_xml(signatures, snapshot.timestamp),
            media_type=_XML_MEDIA_TYPE,
            headers=headers,
        )

    status_code, text = signature_status(signatures)
    return PlainTextResponse(text, status_code=status_code, headers=headers)


@router.post("/signatures", status_code=201)
def create_local_signature(
    submission: LocalSignatureCreate,
    cache: SignatureCache = Depends(get_cache),
    auth: ListAuthContext = Depends(require_list_auth),
):
    """Record an offline-signed CLA and publish it immediately."""
    signature = cache.submit_local_signature(submission, uploader=auth.username)
    logger.info(
        "Local signature added",
        extra={"user": signature.user, "origin": signature.origin},
    )
    return JSONResponse(signature_to_dict(signature), status_code=201)
