from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from datetime import timedelta
from typing import Any, Optional

from tenantauth.logging import get_logger
from tenantauth.service.errors import InvalidToken

logger = get_logger(__name__)

ALGORITHM = "HS256"


class TokenCodec:
    """HS256 JWT signing and verification with a single shared secret."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        leeway: timedelta = timedelta(seconds=30),
    ) -> None:
        if not secret:
            raise ValueError("token signing secret must not be empty")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.leeway = leeway

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def encode(self, claims: dict[str, Any]) -> str:
        header = {"alg": ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(claims, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _reject(self, reason: str, **fields: Any) -> InvalidToken:
        # The reason is logged only; callers always see the same message
        logger.warning("token_rejected", reason=reason, **fields)
        return InvalidToken()

    def decode(self, token: str, *, expected_type: Optional[str] = None) -> dict[str, Any]:
        """Verify ``token`` and return its claims.

        Raises InvalidToken for any structural, algorithm, signature, issuer,
        audience, expiry, not-before or type failure.
        """
        if not token or not isinstance(token, str):
            raise self._reject("missing")
        # Base64url segments are ASCII; anything else cannot be a token we issued
        if not token.isascii():
            raise self._reject("malformed")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise self._reject("malformed") from None

        # Only HS256 is accepted; this blocks "none" and asymmetric confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            raise self._reject("header_decode_failed") from None
        if not isinstance(header, dict) or header.get("alg") != ALGORITHM:
            alg = header.get("alg") if isinstance(header, dict) else None
            raise self._reject("invalid_algorithm", alg=alg)

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise self._reject("bad_signature")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError):
            raise self._reject("payload_decode_failed") from None
        if not isinstance(payload, dict):
            raise self._reject("payload_not_object")

        if payload.get("iss") != self.issuer:
            raise self._reject("issuer_mismatch")
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise self._reject("audience_mismatch")

        now = time.time()
        leeway = self.leeway.total_seconds()
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise self._reject("missing_exp") from None
        if exp_ts <= now - leeway:
            raise self._reject("expired")
        nbf = payload.get("nbf")
        if nbf is not None:
            try:
                nbf_ts = float(nbf)
            except (TypeError, ValueError):
                raise self._reject("invalid_nbf") from None
            if nbf_ts > now + leeway:
                raise self._reject("not_yet_valid")

        if expected_type is not None and payload.get("type") != expected_type:
            raise self._reject(
                "type_mismatch", expected=expected_type, actual=payload.get("type")
            )
        return payload


def subject_id(claims: dict[str, Any]) -> int:
    """Account id carried by ``user_id`` (falling back to ``sub``)."""
    raw = claims.get("user_id", claims.get("sub"))
    if isinstance(raw, bool):
        raise InvalidToken()
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise InvalidToken() from None
    if value <= 0:
        raise InvalidToken()
    return value
