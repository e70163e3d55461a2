"""Account identity from id_token claims."""

from __future__ import annotations

import logging
import uuid

import jwt

from graphgate.auth.models.accounts import Account

logger = logging.getLogger(__name__)


def account_from_id_token(id_token: str | None) -> Account:
    """Build an Account from the id_token returned with a grant.

    The token arrives directly from the identity provider over TLS, so the
    signature is not checked here; only the identity claims are read.
    Microsoft home account ids are ``<oid>.<tid>``.
    """
    if not id_token:
        logger.warning("Token response carried no id_token, using anonymous account")
        return Account(home_account_id=str(uuid.uuid4()))

    try:
        claims = jwt.decode(id_token, options={"verify_signature": False})
    except jwt.PyJWTError as e:
        logger.warning(f"Could not decode id_token: {e}")
        return Account(home_account_id=str(uuid.uuid4()))

    object_id = claims.get("oid") or claims.get("sub") or str(uuid.uuid4())
    tenant_id = claims.get("tid")
    home_account_id = f"{object_id}.{tenant_id}" if tenant_id else object_id

    return Account(
        home_account_id=home_account_id,
        username=claims.get("preferred_username") or claims.get("email") or "",
        name=claims.get("name") or "",
    )
