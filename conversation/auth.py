"""HS256 signed-token issue/verify and the connection authenticator."""

from __future__ import annotations

import base64
import hmac
import json
import logging
import time
from dataclasses import dataclass
from hashlib import sha256
from typing import Any, Dict, Optional

from .collaborators import UserDirectory
from .errors import InvalidCredentialError, MissingCredentialError, UserNotFound

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("utf-8")


def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


@dataclass
class AuthenticatedUser:
    user_id: str
    display_name: str = ""


class TokenSigner:
    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("a signing secret is required to issue or verify tokens")
        self._secret = secret.encode("utf-8")

    def _sign(self, signing_input: str) -> bytes:
        return hmac.new(self._secret, signing_input.encode("utf-8"), sha256).digest()

    def issue(self, claims: Dict[str, Any], expires_in: int = 3600) -> str:
        now = int(time.time())
        payload = {"iat": now, "exp": now + expires_in, **claims}
        header = {"alg": ALGORITHM, "typ": "JWT"}
        signing_input = ".".join(
            [
                _b64url(json.dumps(header, separators=(",", ":"), sort_keys=True).encode()),
                _b64url(json.dumps(payload, separators=(",", ":"), sort_keys=True).encode()),
            ]
        )
        return signing_input + "." + _b64url(self._sign(signing_input))

    def verify(self, token: str) -> Dict[str, Any]:
        """Return the claims of ``token`` or raise ``InvalidCredentialError``."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
            header = json.loads(_b64url_decode(header_b64))
            signature = _b64url_decode(sig_b64)
        except ValueError as exc:
            raise InvalidCredentialError("malformed token") from exc
        if not isinstance(header, dict) or header.get("alg") != ALGORITHM:
            raise InvalidCredentialError("unsupported token algorithm")
        if not hmac.compare_digest(self._sign(header_b64 + "." + payload_b64), signature):
            raise InvalidCredentialError("invalid signature")
        try:
            payload = json.loads(_b64url_decode(payload_b64))
        except ValueError as exc:
            raise InvalidCredentialError("invalid token payload") from exc
        if not isinstance(payload, dict):
            raise InvalidCredentialError("invalid token payload")

        exp = payload.get("exp")
        if not isinstance(exp, (int, float)) or isinstance(exp, bool):
            raise InvalidCredentialError("token expiry missing")
        if time.time() >= exp:
            raise InvalidCredentialError("token expired")
        return payload


class SessionAuthenticator:
    """Validates a connection credential and resolves its user."""

    def __init__(self, signer: TokenSigner, users: UserDirectory) -> None:
        self.signer = signer
        self.users = users

    async def authenticate(self, raw_credential: Optional[str]) -> AuthenticatedUser:
        if not raw_credential:
            raise MissingCredentialError()
        claims = self.signer.verify(raw_credential)
        # "id" is what older tokens carry as their subject
        subject = claims.get("sub") or claims.get("id")
        if not subject or not isinstance(subject, str):
            raise InvalidCredentialError("token subject missing")
        try:
            user = await self.users.lookup_by_id(subject)
        except UserNotFound as exc:
            raise InvalidCredentialError("User not found") from exc
        logger.debug("Authenticated user %s", user.id)
        return AuthenticatedUser(user_id=user.id, display_name=user.display_name)
