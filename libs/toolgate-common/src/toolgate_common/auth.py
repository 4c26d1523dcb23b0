"""Caller authentication for the tool gateway.

Callers (agents, orchestrators) present a short-lived HS256 JWT. The token
names the caller in ``sub`` and may restrict it to a set of catalogs with the
``catalogs`` claim; a token without that claim may use every catalog.
"""

import time
from dataclasses import dataclass, field
from typing import Iterable, Optional

import jwt
from fastapi import HTTPException, Request, status

DEFAULT_TOKEN_EXPIRY_SECONDS = 300

CATALOGS_CLAIM = "catalogs"


@dataclass(frozen=True)
class CallerIdentity:
    """Verified identity of a gateway caller."""

    caller: str
    issued_at: float
    catalogs: Optional[frozenset[str]] = field(default=None)

    def may_use(self, catalog_name: str) -> bool:
        """Return True if the token grants access to ``catalog_name``."""
        return self.catalogs is None or catalog_name in self.catalogs


def generate_caller_token(
    caller: str,
    secret: str,
    catalogs: Optional[Iterable[str]] = None,
    expiry_seconds: int = DEFAULT_TOKEN_EXPIRY_SECONDS,
) -> str:
    """Generate an HS256 JWT for a gateway caller.

    Args:
        caller: Name of the calling agent or service
        secret: Shared signing secret
        catalogs: Catalog names the token is limited to (None = all)
        expiry_seconds: Token lifetime in seconds (default: 300)

    Returns:
        Encoded JWT string
    """
    now = time.time()
    payload: dict = {
        "sub": caller,
        "iat": now,
        "exp": now + expiry_seconds,
    }
    if catalogs is not None:
        payload[CATALOGS_CLAIM] = sorted(set(catalogs))
    return jwt.encode(payload, secret, algorithm="HS256")


def verify_caller_token(
    token: str,
    secret: str,
    allowed_callers: Optional[list[str]] = None,
) -> CallerIdentity:
    """Verify a caller JWT.

    Args:
        token: The JWT string to verify
        secret: Shared signing secret
        allowed_callers: If given, only these ``sub`` values are accepted

    Returns:
        CallerIdentity for the verified caller

    Raises:
        jwt.ExpiredSignatureError: Token has expired
        jwt.InvalidTokenError: Token is malformed or badly signed
        ValueError: Caller not in the allowed list
    """
    payload = jwt.decode(token, secret, algorithms=["HS256"])

    caller = payload.get("sub")
    if not caller:
        raise jwt.InvalidTokenError("Token missing 'sub' claim")

    if allowed_callers and caller not in allowed_callers:
        raise ValueError(f"Caller '{caller}' not in allowed list: {allowed_callers}")

    catalogs = payload.get(CATALOGS_CLAIM)
    if catalogs is not None and not isinstance(catalogs, list):
        raise jwt.InvalidTokenError(f"'{CATALOGS_CLAIM}' claim must be a list")

    return CallerIdentity(
        caller=caller,
        issued_at=payload.get("iat", 0),
        catalogs=frozenset(catalogs) if catalogs is not None else None,
    )


def _extract_bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization")
    if not auth_header:
        return None
    parts = auth_header.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


class CallerAuthDependency:
    """FastAPI dependency that authenticates gateway callers.

    Usage:
        require_caller = CallerAuthDependency(secret="...", allowed_callers=["planner"])

        @router.post("/catalogs/{catalog_name}/invoke")
        async def invoke(caller: CallerIdentity = Depends(require_caller)): ...
    """

    def __init__(
        self,
        secret: str,
        allowed_callers: Optional[list[str]] = None,
    ):
        self.secret = secret
        self.allowed_callers = allowed_callers

    async def __call__(self, request: Request) -> CallerIdentity:
        token = _extract_bearer_token(request)
        if not token:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Missing Authorization header with Bearer token",
                headers={"WWW-Authenticate": "Bearer"},
            )

        try:
            return verify_caller_token(token, self.secret, self.allowed_callers)
        except jwt.ExpiredSignatureError:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Token has expired",
                headers={"WWW-Authenticate": "Bearer"},
            )
        except ValueError as e:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=str(e),
            )
        except jwt.InvalidTokenError as e:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail=f"Invalid token: {e}",
                headers={"WWW-Authenticate": "Bearer"},
            )
