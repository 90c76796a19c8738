"""
Bearer-token guard for the policy admin API.

Tokens are RS256 JWTs from the wallet's OIDC provider. Signing keys come from
the provider's discovery document and are cached per issuer; an unknown
``kid`` triggers one refresh so key rotation does not need a restart.
Disabled in development via AUTH_ENABLED=false.
"""
from __future__ import annotations

from typing import Optional

import httpx
import structlog
from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from stop_engine.core.config import Settings, get_settings

logger = structlog.get_logger()
bearer = HTTPBearer(auto_error=False)

# issuer → JWKS document
_key_sets: dict[str, dict] = {}


async def _load_key_set(issuer_url: str) -> dict:
    async with httpx.AsyncClient(timeout=5.0) as client:
        discovery = await client.get(f"{issuer_url.rstrip('/')}/.well-known/openid-configuration")
        discovery.raise_for_status()
        jwks = await client.get(discovery.json()["jwks_uri"])
        jwks.raise_for_status()
    _key_sets[issuer_url] = jwks.json()
    logger.info("jwks_loaded", issuer=issuer_url, keys=len(_key_sets[issuer_url].get("keys", [])))
    return _key_sets[issuer_url]


def _find_key(key_set: dict, kid: Optional[str]) -> Optional[dict]:
    return next((k for k in key_set.get("keys", []) if k.get("kid") == kid), None)


async def _signing_key(token: str, issuer_url: str) -> dict:
    kid = jwt.get_unverified_header(token).get("kid")
    key = _find_key(_key_sets.get(issuer_url) or await _load_key_set(issuer_url), kid)
    if key is None:
        # rotated keys: refetch once before giving up
        key = _find_key(await _load_key_set(issuer_url), kid)
    if key is None:
        raise HTTPException(status_code=401, detail="Unknown token signing key")
    return key


async def verify_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer),
    settings: Settings = Depends(get_settings),
) -> dict:
    """Decoded claims of a valid bearer token."""
    if not settings.auth_enabled:
        return {"sub": "dev-user", "roles": [settings.policy_admin_role]}

    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing authorization header")

    try:
        key = await _signing_key(credentials.credentials, settings.oidc_issuer_url)
        return jwt.decode(
            credentials.credentials,
            key,
            algorithms=["RS256"],
            audience=settings.oidc_audience,
            issuer=settings.oidc_issuer_url,
        )
    except JWTError as e:
        logger.warning("jwt_validation_failed", error=str(e))
        raise HTTPException(status_code=401, detail=f"Token validation failed: {e}")
    except httpx.HTTPError as e:
        logger.error("jwks_unavailable", issuer=settings.oidc_issuer_url, error=str(e))
        raise HTTPException(status_code=503, detail="Identity provider unavailable")


def token_roles(payload: dict) -> set[str]:
    """Flat `roles` claim plus Keycloak-style `realm_access.roles`."""
    roles = set(payload.get("roles", []))
    roles.update(payload.get("realm_access", {}).get("roles", []))
    return roles


async def require_policy_admin(
    token_payload: dict = Depends(verify_token),
    settings: Settings = Depends(get_settings),
) -> dict:
    if settings.policy_admin_role not in token_roles(token_payload):
        logger.warning("policy_admin_forbidden", sub=token_payload.get("sub", "unknown"))
        raise HTTPException(status_code=403, detail="Policy admin role required")
    return token_payload
