"""
Identity Resolver

Bearer JWTs are verified against the configured public key. Requests without
a valid token fall back to an anonymous identity `anon-<uuid4>` that is
minted once and kept in a long-lived cookie.
"""

import uuid
from typing import Optional

from jose import JWTError, jwt
from starlette.requests import HTTPConnection
from starlette.responses import Response

from erazor.core.config import settings
from erazor.core.logging import get_logger
from erazor.engines.quota.schemas import CallerIdentity

logger = get_logger(__name__)

ANON_PREFIX = "anon-"


def mint_anonymous_id() -> str:
    return f"{ANON_PREFIX}{uuid.uuid4()}"


def is_anonymous_id(identity: Optional[str]) -> bool:
    return bool(identity) and identity.startswith(ANON_PREFIX)


def client_ip(connection: HTTPConnection) -> str:
    forwarded = connection.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if connection.client:
        return connection.client.host
    return "unknown-ip"


def client_fingerprint(connection: HTTPConnection) -> str:
    return (
        connection.headers.get(settings.FINGERPRINT_HEADER)
        or connection.headers.get("user-agent")
        or "unknown-device"
    )


def _bearer_token(connection: HTTPConnection) -> Optional[str]:
    authorization = connection.headers.get("authorization")
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip()
    # browsers cannot set headers on a WebSocket handshake
    return connection.query_params.get("token")


class IdentityResolver:
    """Resolves the caller of an HTTP request or WebSocket handshake."""

    def __init__(
        self,
        public_key: Optional[str] = settings.AUTH_JWT_PUBLIC_KEY,
        algorithm: str = settings.AUTH_JWT_ALGORITHM,
        cookie_name: str = settings.ANON_COOKIE_NAME,
    ):
        self.public_key = public_key
        self.algorithm = algorithm
        self.cookie_name = cookie_name

    def verify_token(self, token: str) -> Optional[str]:
        """Return the token subject, or None if the token is not acceptable."""
        if not self.public_key:
            return None
        try:
            payload = jwt.decode(
                token,
                self.public_key,
                algorithms=[self.algorithm],
                options={"verify_aud": False},
            )
        except JWTError as e:
            logger.info("bearer_token_rejected", error=str(e))
            return None
        return payload.get("sub")

    def resolve(self, connection: HTTPConnection, mint: bool = True) -> Optional[CallerIdentity]:
        """
        Resolve the caller.

        Args:
            connection: Request or WebSocket
            mint: Create a new anonymous id when the caller has none. When
                False, an unknown caller resolves to None.
        """
        ip = client_ip(connection)
        fingerprint = client_fingerprint(connection)

        token = _bearer_token(connection)
        if token:
            subject = self.verify_token(token)
            if subject:
                return CallerIdentity(identity=subject, ip=ip, fingerprint=fingerprint)

        anon_id = connection.cookies.get(self.cookie_name) or connection.query_params.get(self.cookie_name)
        if is_anonymous_id(anon_id):
            return CallerIdentity(identity=anon_id, is_anonymous=True, ip=ip, fingerprint=fingerprint)

        if not mint:
            return None

        return CallerIdentity(
            identity=mint_anonymous_id(),
            is_anonymous=True,
            ip=ip,
            fingerprint=fingerprint,
            minted=True,
        )

    def persist(self, response: Response, caller: CallerIdentity):
        """Set the anonymous cookie on the response if the id is new."""
        if not caller.minted:
            return
        response.set_cookie(
            key=self.cookie_name,
            value=caller.identity,
            max_age=settings.ANON_COOKIE_MAX_AGE_SECONDS,
            httponly=True,
            samesite="lax",
            secure=settings.is_production,
        )
