"""TOTP (Time-based One-Time Password) provider.

Works with any RFC 6238 authenticator app (Google Authenticator, Microsoft
Authenticator, Authy, 1Password). Uses pyotp for the codes and qrcode for
the provisioning image.
"""

from __future__ import annotations

import base64
import io
import secrets
from datetime import datetime

import pyotp
import qrcode

from ..ports import ITotpProvider, TotpSecret


class PyOtpTotpProvider(ITotpProvider):
    """pyotp-backed implementation of :class:`~authcore.ports.ITotpProvider`.

    Example:
        ```python
        totp = PyOtpTotpProvider(issuer="MyApp")
        created = totp.new_secret("user@example.com")
        qr_data_url = totp.render_provisioning_image(created.provisioning_uri)

        totp.verify(created.secret, "123456", tolerance_steps=2)
        ```
    """

    def __init__(
        self,
        *,
        issuer: str = "AuthCore",
        digits: int = 6,
        interval: int = 30,
        box_size: int = 10,
        border: int = 4,
    ) -> None:
        """Initialize the TOTP provider.

        Args:
            issuer: Application name shown in authenticator apps.
            digits: Number of digits in a code (default 6).
            interval: Time step in seconds (default 30).
            box_size: QR module size in pixels.
            border: QR quiet-zone width in modules.
        """
        self.issuer = issuer
        self.digits = digits
        self.interval = interval
        self.box_size = box_size
        self.border = border

    def _totp(self, secret: str) -> pyotp.TOTP:
        return pyotp.TOTP(secret, digits=self.digits, interval=self.interval)

    def new_secret(self, label: str) -> TotpSecret:
        secret = pyotp.random_base32()
        uri = self._totp(secret).provisioning_uri(name=label, issuer_name=self.issuer)
        return TotpSecret(secret=secret, provisioning_uri=uri)

    def current_code(self, secret: str, *, for_time: datetime | None = None) -> str:
        totp = self._totp(secret)
        return totp.now() if for_time is None else totp.at(for_time)

    def match_step(
        self,
        secret: str,
        code: str,
        tolerance_steps: int,
        *,
        for_time: datetime | None = None,
    ) -> int | None:
        """Return the time step ``code`` belongs to, or None if it matches none.

        Steps within ``tolerance_steps`` either side of ``for_time`` are tried.
        """
        code = code.strip()
        if not code.isdigit() or len(code) != self.digits:
            return None
        totp = self._totp(secret)
        when = for_time or datetime.now()
        for offset in range(-tolerance_steps, tolerance_steps + 1):
            if secrets.compare_digest(totp.at(when, counter_offset=offset), code):
                return totp.timecode(when) + offset
        return None

    def verify(
        self,
        secret: str,
        code: str,
        tolerance_steps: int,
        *,
        for_time: datetime | None = None,
    ) -> bool:
        """Check ``code`` within ``tolerance_steps`` time steps either side."""
        return (
            self.match_step(secret, code, tolerance_steps, for_time=for_time) is not None
        )

    def render_provisioning_image(self, uri: str) -> str:
        """Render ``uri`` as a ``data:image/png;base64,...`` URL."""
        qr = qrcode.QRCode(version=1, box_size=self.box_size, border=self.border)
        qr.add_data(uri)
        qr.make(fit=True)
        image = qr.make_image(fill_color="black", back_color="white")

        buffer = io.BytesIO()
        image.save(buffer)
        data = base64.b64encode(buffer.getvalue()).decode()
        return f"data:image/png;base64,{data}"


__all__: list[str] = ["PyOtpTotpProvider"]
