"""Authentication and authorization for story-relay with JWT bearer tokens."""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import jwt
from fastapi import Depends, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from errors import AuthenticationError, AuthorizationError
from models import Principal

logger = logging.getLogger("story-relay.auth")

# Bearer security scheme; errors are raised by AuthManager, not by FastAPI
bearer_scheme = HTTPBearer(auto_error=False)


class AuthManager:
    """JWT-based authentication and authorization manager.

    Tokens are signed by the story backend with a secret shared with the
    relay, so verification needs no lookup.
    """

    def __init__(self, secret: str, algorithm: str = "HS256", required_role: Optional[str] = "ROLE_USER",
                 default_roles: Optional[List[str]] = None, trust_token_roles: bool = False):
        self._secret = secret
        self.algorithm = algorithm
        self.required_role = required_role
        self.default_roles = list(default_roles) if default_roles is not None else ["ROLE_USER"]
        # The roles claim is only read when explicitly enabled; otherwise every
        # validly signed token carries the default roles
        self.trust_token_roles = trust_token_roles

    def generate_token(self, subject: str, roles: Optional[List[str]] = None,
                       expires_in: timedelta = timedelta(hours=1)) -> str:
        """
        Generate a signed token for a subject.

        Args:
            subject: Principal identifier (``sub`` claim)
            roles: Optional role list; omitted from the token when None
            expires_in: Token lifetime, may be negative to mint expired tokens

        Returns:
            JWT token as string
        """
        if not subject:
            raise ValueError("subject is required to generate a token")

        now = datetime.now(timezone.utc)
        payload = {
            "sub": str(subject),
            "iat": int(now.timestamp()),
            "exp": int((now + expires_in).timestamp()),
            "jti": str(uuid.uuid4()),
        }
        if roles is not None:
            payload["roles"] = list(roles)
        return jwt.encode(payload, self._secret, algorithm=self.algorithm)

    def verify_token(self, token: Optional[str]) -> Principal:
        """
        Verify signature and expiry and extract the principal.

        Every failure raises the same AuthenticationError; the reason is only
        logged so callers cannot tell the cases apart.
        """
        if not token or not token.strip():
            raise self._deny("missing token")

        try:
            payload = jwt.decode(
                token.strip(),
                self._secret,
                algorithms=[self.algorithm],
                options={"require": ["exp", "sub"]},
            )
        except jwt.ExpiredSignatureError:
            raise self._deny("token expired") from None
        except jwt.InvalidTokenError as e:
            raise self._deny(f"invalid token: {e}") from None

        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject.strip():
            raise self._deny("token has no subject")

        roles = self.default_roles
        claimed = payload.get("roles")
        if self.trust_token_roles and isinstance(claimed, list) and all(isinstance(role, str) for role in claimed):
            roles = claimed
        return Principal(subject=subject, roles=roles)

    def authorize(self, principal: Principal) -> Principal:
        """Check that an authenticated principal holds the required role."""
        if self.required_role and self.required_role not in principal.roles:
            logger.warning(f"Access denied for {principal.subject}: missing {self.required_role}")
            raise AuthorizationError(f"missing role {self.required_role}")
        return principal

    @staticmethod
    def _deny(reason: str) -> AuthenticationError:
        logger.warning(f"JWT token validation failed: {reason}")
        return AuthenticationError(reason)


# Authentication dependencies for FastAPI routes
async def get_principal(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
) -> Principal:
    """Resolve the bearer token into a principal for this request."""
    auth_manager: AuthManager = request.app.state.auth_manager
    principal = auth_manager.verify_token(credentials.credentials if credentials else None)
    request.state.principal = principal
    logger.debug(f"Authenticated request for {principal.subject}")
    return principal


async def require_principal(request: Request, principal: Principal = Depends(get_principal)) -> Principal:
    """Authenticated and authorized principal for protected routes."""
    return request.app.state.auth_manager.authorize(principal)
