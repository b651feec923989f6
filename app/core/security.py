from __future__ import annotations

import os
from dataclasses import dataclass

from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from app.core.tenant import get_company_id

bearer = HTTPBearer(auto_error=False)

# Tokens are minted by the external IAM service; this core only verifies them
# to learn who is acting (for created_by/updated_by stamping and the audit log).
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = os.getenv("JWT_ALG", "HS256")
IAM_ISSUER = os.getenv("IAM_ISSUER", "enterprise-iam")
IAM_AUDIENCE = os.getenv("IAM_AUDIENCE", "distribution-core")

SYSTEM_ACTOR = "system"


@dataclass
class Principal:
    user_id: str = SYSTEM_ACTOR
    company_id: str = "default"
    authenticated: bool = False

    @property
    def actor(self) -> str:
        return self.user_id or SYSTEM_ACTOR


def decode_token(token: str) -> dict:
    return jwt.decode(
        token,
        JWT_SECRET,
        algorithms=[JWT_ALG],
        audience=IAM_AUDIENCE,
        issuer=IAM_ISSUER,
    )


def get_principal(
    creds: HTTPAuthorizationCredentials | None = Depends(bearer),
    x_user_id: str | None = Header(default=None),
) -> Principal:
    if creds and creds.credentials:
        try:
            payload = decode_token(creds.credentials)
        except JWTError:
            payload = None
        if payload and payload.get("sub"):
            # the token's company wins over the header so a user cannot post into another tenant
            company_id = str(payload.get("cid") or payload.get("tid") or get_company_id())
            return Principal(user_id=str(payload["sub"]), company_id=company_id, authenticated=True)
        # a rejected token never falls back to the caller-supplied user header
        return Principal(user_id=SYSTEM_ACTOR, company_id=get_company_id(), authenticated=False)

    return Principal(user_id=x_user_id or SYSTEM_ACTOR, company_id=get_company_id(), authenticated=False)
