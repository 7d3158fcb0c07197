"""One-time code lifecycle and TOTP support."""

from __future__ import annotations

from .manager import IssuedCode, OtpManager
from .totp import PyOtpTotpProvider

__all__: list[str] = [
    "IssuedCode",
    "OtpManager",
    "PyOtpTotpProvider",
]
