"""
Upstream identity verification.

The web client signs users in with Firebase Authentication and exchanges the
resulting ID token for an API session token. This module owns the Firebase
Admin app and turns a verified ID token into the identity the ledger keys on.
"""

from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import threading
from typing import Optional

import firebase_admin
from firebase_admin import auth as firebase_auth
from firebase_admin import credentials

from config import settings

logger = logging.getLogger(__name__)

_APP_NAME = "cv-tailor-api"
_app_lock = threading.Lock()


class IdentityVerificationError(ValueError):
    """The presented identity assertion is malformed, expired, revoked or forged."""


class IdentityProviderUnavailableError(RuntimeError):
    """The identity provider is not configured or its signing keys cannot be fetched."""


@dataclass(frozen=True)
class VerifiedIdentity:
    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None


def identity_provider_configured() -> bool:
    return bool((settings.FIREBASE_PROJECT_ID or "").strip() or (settings.FIREBASE_SERVICE_ACCOUNT_JSON or "").strip())


def get_firebase_app() -> firebase_admin.App:
    """Return the process-wide Firebase Admin app, initializing it on first use."""
    if not identity_provider_configured():
        raise IdentityProviderUnavailableError("FIREBASE_PROJECT_ID or FIREBASE_SERVICE_ACCOUNT_JSON must be configured")

    with _app_lock:
        try:
            return firebase_admin.get_app(_APP_NAME)
        except ValueError:
            pass

        service_account = (settings.FIREBASE_SERVICE_ACCOUNT_JSON or "").strip()
        if service_account:
            credential = credentials.Certificate(json.loads(service_account))
        else:
            credential = credentials.ApplicationDefault()

        options = {}
        if settings.FIREBASE_PROJECT_ID:
            options["projectId"] = settings.FIREBASE_PROJECT_ID
        logger.info("Initializing Firebase Admin app for project %s", options.get("projectId") or "<from credentials>")
        return firebase_admin.initialize_app(credential, options=options, name=_APP_NAME)


def verify_identity_assertion(id_token: str) -> VerifiedIdentity:
    """Verify a Firebase ID token and return the identity it asserts."""
    if not id_token or not id_token.strip():
        raise IdentityVerificationError("Missing identity token")

    app = get_firebase_app()
    try:
        claims = firebase_auth.verify_id_token(id_token, app=app, check_revoked=True)
    except firebase_auth.CertificateFetchError as exc:
        raise IdentityProviderUnavailableError(f"Could not fetch identity provider keys: {exc}") from exc
    except (ValueError, firebase_auth.InvalidIdTokenError, firebase_auth.UserDisabledError) as exc:
        raise IdentityVerificationError(str(exc)) from exc

    user_id = claims.get("uid") or claims.get("sub")
    if not user_id:
        raise IdentityVerificationError("Identity token has no subject")
    return VerifiedIdentity(user_id=user_id, email=claims.get("email"), name=claims.get("name"))
