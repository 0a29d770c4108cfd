"""TOTP enrollment and verification, plus the demo out-of-band code path."""

from __future__ import annotations

import base64
import hashlib
import hmac
import io
import re
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from urllib.parse import quote, urlencode

import qrcode
from qrcode.image.svg import SvgPathImage

from bmsauth.config import MfaMode
from bmsauth.logging import get_logger
from bmsauth.storage.models import Principal
from bmsauth.storage.store import CredentialStore

logger = get_logger(__name__)

TOTP_PERIOD = 30
TOTP_DIGITS = 6
SECRET_BYTES = 20

_CODE_RE = re.compile(r"[0-9]{6}")


def normalize_code(code: Optional[str]) -> Optional[str]:
    """Strip whitespace; return None unless exactly six ASCII digits remain."""
    if not isinstance(code, str):
        return None
    cleaned = "".join(code.split())
    if not _CODE_RE.fullmatch(cleaned):
        return None
    return cleaned


def generate_secret() -> str:
    return base64.b32encode(secrets.token_bytes(SECRET_BYTES)).decode("ascii").rstrip("=")


def totp_at(
    secret: str,
    timestamp: float,
    *,
    period: int = TOTP_PERIOD,
    digits: int = TOTP_DIGITS,
) -> str:
    """RFC 6238 code for ``timestamp``; empty string if the secret is not base32."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, casefold=True)
    except (ValueError, TypeError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // period).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


@dataclass(frozen=True)
class MfaEnrollment:
    secret: str
    provisioning_uri: str
    qr_data_uri: str


class MfaEngine:
    """Second-factor checks for principals held in a ``CredentialStore``.

    ``enroll`` only proposes a secret; nothing is persisted until
    ``confirm_enrollment`` sees a valid code for it. Verification accepts the
    current step and ``window_steps`` neighbours on either side, so a code
    may be replayed while its step is still inside that window.
    """

    def __init__(
        self,
        store: CredentialStore,
        *,
        issuer: str = "BMS",
        window_steps: int = 1,
        mode: MfaMode = MfaMode.TOTP,
        out_of_band_ttl_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.window_steps = max(0, int(window_steps))
        self.mode = mode
        self.out_of_band_ttl_seconds = out_of_band_ttl_seconds
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    # TOTP
    def provisioning_uri(self, identifier: str, secret: str) -> str:
        label = quote(f"{self.issuer}:{identifier}", safe=":@")
        params = urlencode(
            {
                "secret": secret,
                "issuer": self.issuer,
                "algorithm": "SHA1",
                "digits": TOTP_DIGITS,
                "period": TOTP_PERIOD,
            },
            quote_via=quote,
        )
        return f"otpauth://totp/{label}?{params}"

    @staticmethod
    def render_qr(uri: str) -> str:
        img = qrcode.make(uri, image_factory=SvgPathImage)
        buffer = io.BytesIO()
        img.save(buffer)
        encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
        return f"data:image/svg+xml;base64,{encoded}"

    def enroll(self, principal: Principal) -> MfaEnrollment:
        secret = generate_secret()
        uri = self.provisioning_uri(principal.identifier, secret)
        logger.info("mfa_enrollment_started", user_id=principal.id)
        return MfaEnrollment(secret=secret, provisioning_uri=uri, qr_data_uri=self.render_qr(uri))

    def check_code(self, secret: Optional[str], code: Optional[str]) -> bool:
        normalized = normalize_code(code)
        if normalized is None or not secret:
            return False
        now = self._clock()
        matched = False
        for offset in range(-self.window_steps, self.window_steps + 1):
            generated = totp_at(secret, now + offset * TOTP_PERIOD)
            # evaluate every step so timing does not depend on which one matched
            if generated and hmac.compare_digest(generated, normalized):
                matched = True
        return matched

    def confirm_enrollment(self, principal: Principal, secret: str, code: str) -> bool:
        if not self.check_code(secret, code):
            logger.info("mfa_enrollment_rejected", user_id=principal.id)
            return False
        self.store.set_mfa_secret(principal.id, secret)
        self.store.set_mfa_enabled(principal.id, True)
        logger.info("mfa_enrolled", user_id=principal.id)
        return True

    def verify_login(self, principal: Principal, code: str) -> bool:
        if not principal.mfa_enabled or not principal.mfa_secret:
            return False
        return self.check_code(principal.mfa_secret, code)

    def disable(self, principal: Principal) -> None:
        self.store.set_mfa_secret(principal.id, None)
        self.store.set_mfa_enabled(principal.id, False)
        self.store.set_pending_code(principal.id, None)
        logger.info("mfa_disabled", user_id=principal.id)

    # Out-of-band demo codes
    def issue_out_of_band_code(self, principal: Principal) -> datetime:
        """Store a fresh single-use code on the principal and log it.

        There is no delivery channel; the code is written to the log at
        WARNING, which is why this mode is off unless MFA_MODE asks for it.
        """
        code = f"{secrets.randbelow(10**TOTP_DIGITS):0{TOTP_DIGITS}d}"
        expires_at = self._now() + timedelta(seconds=self.out_of_band_ttl_seconds)
        self.store.set_pending_code(principal.id, code, expires_at)
        # logged unredacted: the log is the delivery channel
        logger.warning(
            "mfa_out_of_band_code_issued",
            user_id=principal.id,
            delivered_code=code,
            expires_at=expires_at.isoformat(),
        )
        return expires_at

    def verify_out_of_band_code(self, principal: Principal, code: str) -> bool:
        normalized = normalize_code(code)
        if normalized is None:
            return False
        current = self.store.find_by_id(principal.id)
        if current is None or not current.pending_code:
            return False
        expires_at = current.pending_code_expires_at
        if expires_at is not None and expires_at <= self._now():
            self.store.set_pending_code(principal.id, None)
            logger.info("mfa_out_of_band_code_expired", user_id=principal.id)
            return False
        if not hmac.compare_digest(current.pending_code, normalized):
            return False
        self.store.set_pending_code(principal.id, None)
        return True

    def verify(self, principal: Principal, code: str) -> bool:
        """Check a login-time second factor in whichever mode is configured."""
        if self.mode is MfaMode.OUT_OF_BAND:
            return self.verify_out_of_band_code(principal, code)
        return self.verify_login(principal, code)
