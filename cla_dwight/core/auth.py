"""Basic-auth guard for the signature listing.

Public interface:
    ``list_auth``         - FastAPI dependency, always returns a ListAuthContext.
    ``require_list_auth`` - same, but raises 401 when the caller is not authorized.

``CLA_LIST_AUTH`` holds the accepted base64 ``user:password`` tokens. When it
is empty the listing is public and every caller counts as authorized.
"""

import base64
import binascii
import hmac
import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from fastapi import Depends, Request

from ..exceptions import AuthenticationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ListAuthContext:
    """Outcome of the basic-auth check for one request."""

    authorized: bool
    username: Optional[str] = None


_PUBLIC = ListAuthContext(authorized=True)
_DENIED = ListAuthContext(authorized=False)


def _username_of(token: str) -> Optional[str]:
    try:
        decoded = base64.b64decode(token, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    return decoded.split(":", 1)[0] or None


def check_basic_auth(authorization: Optional[str], accepted_tokens: Sequence[str]) -> ListAuthContext:
    """Match an ``Authorization`` header against the accepted tokens.

    Pure function so it can be tested without HTTP.
    """
    if not accepted_tokens:
        return _PUBLIC
    if not authorization:
        return _DENIED

    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0] != "Basic":
        return _DENIED

    token = parts[1]
    if not any(hmac.compare_digest(token.encode(), accepted.encode()) for accepted in accepted_tokens):
        return _DENIED
    return ListAuthContext(authorized=True, username=_username_of(token))


def list_auth(request: Request) -> ListAuthContext:
    """Resolve the caller's authorization. Never raises."""
    settings = request.app.state.settings
    return check_basic_auth(request.headers.get("authorization"), settings.get_list_auth())


def require_list_auth(auth: ListAuthContext = Depends(list_auth)) -> ListAuthContext:
    """Require valid basic-auth credentials when ``CLA_LIST_AUTH`` is set."""
    if not auth.authorized:
        raise AuthenticationError()
    return auth
