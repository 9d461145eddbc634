from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from datetime import timedelta
from typing import Any, Iterable, Optional

from iamcore.clock import Clock, utc_now
from iamcore.config import Settings
from iamcore.logging import get_logger

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenIssuer:
    """Stateless HS256 JWT minting and validation.

    Access and refresh tokens are signed with different keys, so neither
    can be presented in place of the other even if ``token_type`` were
    ignored. Revocation is handled by the session store, never here.
    """

    def __init__(self, settings: Settings, *, clock: Clock = utc_now) -> None:
        self.settings = settings
        self._clock = clock
        self._leeway = settings.jwt_leeway_seconds

    @property
    def access_ttl_seconds(self) -> int:
        return self.settings.access_token_ttl_minutes * 60

    def _key_for(self, token_type: str) -> bytes:
        if token_type == REFRESH:
            return self.settings.refresh_signing_secret.encode()
        return self.settings.jwt_secret.encode()

    def _encode(self, payload: dict[str, Any], token_type: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(
            self._key_for(token_type), signing_input.encode(), hashlib.sha256
        ).digest()
        return f"{signing_input}.{_encode_segment(signature)}"

    def _base_claims(self, subject: str, token_type: str, ttl: timedelta) -> dict[str, Any]:
        now = self._clock()
        return {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": subject,
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
            "jti": str(uuid.uuid4()),
            "token_type": token_type,
        }

    def issue_access(
        self, account_id: str, email: str, roles: Iterable[str], tenant_id: str
    ) -> str:
        claims = self._base_claims(
            account_id, ACCESS, timedelta(minutes=self.settings.access_token_ttl_minutes)
        )
        claims.update({"email": email, "roles": sorted(roles), "tenant_id": tenant_id})
        return self._encode(claims, ACCESS)

    def issue_refresh(self, account_id: str, session_id: str) -> str:
        claims = self._base_claims(
            account_id, REFRESH, timedelta(minutes=self.settings.refresh_token_ttl_minutes)
        )
        claims["sid"] = session_id
        return self._encode(claims, REFRESH)

    def validate(self, token: Optional[str], token_type: str = ACCESS) -> Optional[dict[str, Any]]:
        """Return the claims of a well-formed, correctly signed, unexpired token."""

        if not token or not isinstance(token, str):
            return None
        if not token.isascii():
            logger.info("jwt_malformed", reason="encoding")
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            logger.info("jwt_malformed", reason="segments")
            return None

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.info("jwt_malformed", reason="header")
            return None
        if not isinstance(header, dict):
            logger.info("jwt_malformed", reason="header")
            return None
        if header.get("alg") != "HS256":
            # Only HS256 is accepted; rejects "none" and algorithm confusion
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = _encode_segment(
            hmac.new(self._key_for(token_type), signing_input.encode(), hashlib.sha256).digest()
        )
        if not hmac.compare_digest(expected_sig.encode("ascii"), sig_b64.encode("ascii")):
            logger.warning("jwt_signature_invalid", kind=token_type)
            return None

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_payload_decode_failed")
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            logger.warning("jwt_issuer_mismatch")
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            logger.warning("jwt_audience_mismatch")
            return None
        if payload.get("token_type") != token_type:
            logger.warning("jwt_type_mismatch", expected=token_type)
            return None
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        if exp_ts <= self._clock().timestamp() - self._leeway:
            logger.info("jwt_expired", kind=token_type)
            return None
        return payload
