from __future__ import annotations


class MonitorError(RuntimeError):
    pass


class CredentialError(MonitorError):
    """Signing key or app identity unusable, or the token exchange failed."""


class AuthError(MonitorError):
    """Bearer token missing, expired or rejected by the Run Provider."""


class ProviderError(MonitorError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransportError(ProviderError):
    """Network-level failure talking to the Run Provider."""
