"""Claims codec for the application's own access tokens.

Access tokens are compact HS256 JWS structures carrying ``jti``, ``sub``,
``email``, ``roles``, ``iat``, ``exp``, ``iss`` and ``aud``. Time claims are
whole epoch seconds.

Clock skew: ``exp`` is honoured for ``leeway_seconds`` after it passes
(``CLOCK_SKEW_LEEWAY_SECONDS``, default 5). No other claim is relaxed.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, List, Optional

from sessioncore.service.clock import Clock, epoch_seconds, from_epoch, utcnow
from sessioncore.service.errors import MalformedToken, SignatureInvalid, TokenExpired

_ALGORITHM = "HS256"


@dataclass(frozen=True)
class AccessClaims:
    jti: str
    subject: str
    email: str
    roles: List[str] = field(default_factory=list)
    issued_at: int = 0
    expires_at: int = 0
    issuer: str = ""
    audience: str = ""

    @property
    def issued_at_dt(self) -> datetime:
        return from_epoch(self.issued_at)

    @property
    def expires_at_dt(self) -> datetime:
        return from_epoch(self.expires_at)

    def to_payload(self) -> dict[str, Any]:
        return {
            "jti": self.jti,
            "sub": self.subject,
            "email": self.email,
            "roles": list(self.roles),
            "iat": self.issued_at,
            "exp": self.expires_at,
            "iss": self.issuer,
            "aud": self.audience,
        }


@dataclass(frozen=True)
class MintedToken:
    token: str
    claims: AccessClaims


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _int_claim(payload: dict[str, Any], name: str) -> int:
    value = payload.get(name)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedToken(f"missing or invalid {name} claim")
    return int(value)


def _str_claim(payload: dict[str, Any], name: str) -> str:
    value = payload.get(name)
    if not isinstance(value, str) or not value:
        raise MalformedToken(f"missing or invalid {name} claim")
    return value


class ClaimsCodec:
    """Mint and verify signed access tokens. Pure; no I/O."""

    def __init__(
        self,
        secret: str,
        issuer: str,
        audience: str,
        *,
        default_ttl: timedelta = timedelta(minutes=15),
        leeway_seconds: int = 5,
        clock: Clock = utcnow,
    ) -> None:
        if not secret:
            raise ValueError("signing secret is required")
        self._key = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.default_ttl = default_ttl
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        )

    def mint(
        self,
        subject_id: str,
        email: str,
        roles: Iterable[str],
        ttl: Optional[timedelta] = None,
    ) -> MintedToken:
        issued_at = epoch_seconds(self._clock())
        lifetime = int((ttl or self.default_ttl).total_seconds())
        claims = AccessClaims(
            jti=str(uuid.uuid4()),
            subject=subject_id,
            email=email,
            roles=list(dict.fromkeys(roles)),
            issued_at=issued_at,
            expires_at=issued_at + lifetime,
            issuer=self.issuer,
            audience=self.audience,
        )
        header = {"alg": _ALGORITHM, "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(
            json.dumps(claims.to_payload(), separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return MintedToken(f"{signing_input}.{self._sign(signing_input)}", claims)

    def verify(self, token: str) -> AccessClaims:
        """Return the token's claims or raise MalformedToken, SignatureInvalid or TokenExpired."""
        if not isinstance(token, str) or token.count(".") != 2:
            raise MalformedToken()
        header_b64, payload_b64, sig_b64 = token.split(".")
        try:
            header = json.loads(_decode_segment(header_b64))
        except ValueError as exc:
            raise MalformedToken("unreadable header") from exc
        # Only HS256; alg=none and asymmetric algs are rejected before any HMAC
        if not isinstance(header, dict) or header.get("alg") != _ALGORITHM:
            raise MalformedToken("unsupported algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise SignatureInvalid()

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except ValueError as exc:
            raise MalformedToken("unreadable payload") from exc
        if not isinstance(payload, dict):
            raise MalformedToken("payload is not an object")

        if payload.get("iss") != self.issuer:
            raise SignatureInvalid("issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise SignatureInvalid("audience mismatch")

        roles = payload.get("roles", [])
        if not isinstance(roles, list) or not all(isinstance(r, str) for r in roles):
            raise MalformedToken("invalid roles claim")
        claims = AccessClaims(
            jti=_str_claim(payload, "jti"),
            subject=_str_claim(payload, "sub"),
            email=payload.get("email") if isinstance(payload.get("email"), str) else "",
            roles=roles,
            issued_at=_int_claim(payload, "iat"),
            expires_at=_int_claim(payload, "exp"),
            issuer=self.issuer,
            audience=self.audience,
        )
        if claims.expires_at <= epoch_seconds(self._clock()) - self.leeway_seconds:
            raise TokenExpired()
        return claims
