"""
JWT claim inspection.

Tokens are only decoded, never verified; the backends verify them. Used to
learn a token's expiry and which node groups the caller may target.
"""

import base64
import binascii
import json
import logging
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

ADMIN_ROLE = "pa_admin"

# Keycloak roles that never name a node group
NON_GROUP_ROLES = {"offline_access", "uma_authorization"}


def decode_claims(token: str) -> Dict[str, Any]:
    """Return the claims of a JWT (accepts a 'Bearer <token>' string)."""
    raw = token.split(" ", 1)[1] if " " in token else token
    parts = raw.split(".")
    if len(parts) < 2:
        raise ValueError("token is not a JWT")
    payload = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(payload))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"could not decode JWT claims: {e}")
    if not isinstance(claims, dict):
        raise ValueError("JWT claims are not an object")
    return claims


def expires_at(token: str) -> Optional[float]:
    """The 'exp' claim as epoch seconds, or None if the token has none."""
    try:
        exp = decode_claims(token).get("exp")
    except ValueError:
        return None
    return float(exp) if isinstance(exp, (int, float)) else None


def get_roles(token: str) -> List[str]:
    claims = decode_claims(token)
    roles = (claims.get("realm_access") or {}).get("roles") or []
    return [role for role in roles if isinstance(role, str)]


def is_admin(token: str) -> bool:
    try:
        return ADMIN_ROLE in get_roles(token)
    except ValueError:
        return False


def get_preferred_username(token: str) -> Optional[str]:
    return decode_claims(token).get("preferred_username")


def group_roles(token: str) -> List[str]:
    """Roles that name node groups the caller may target."""
    return sorted(
        role
        for role in get_roles(token)
        if role not in NON_GROUP_ROLES and role != ADMIN_ROLE and not role.startswith("default-roles-")
    )
