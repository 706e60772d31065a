"""
Error taxonomy shared by the market/DEX clients, the resolver and the surfaces.
"""
from typing import Optional


class CryptoSafetyError(Exception):
    """Base class for all errors raised by this package."""


class NotFound(CryptoSafetyError):
    """Symbol or address has no resolvable data upstream."""


class InvalidInput(CryptoSafetyError):
    """Malformed address or symbol, rejected before any network call."""


class UpstreamError(CryptoSafetyError):
    """Upstream API failure that is not retried."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UpstreamTransient(UpstreamError):
    """Rate-limited (429) or 5xx response; retried once by the clients."""
