"""Error taxonomy shared by adapters, engine and dispatcher."""
from typing import Optional


class InformarrError(Exception):
    """Base class for all informarr errors."""


class ConfigError(InformarrError):
    """Invalid or missing configuration. Fatal at startup."""


class FetchError(InformarrError):
    """A service call failed."""

    def __init__(self, message: str, service: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.service = service
        self.status_code = status_code


class TransientFetchError(FetchError):
    """Network error, 5xx or 429. Retried with backoff."""


class AuthError(FetchError):
    """Credentials rejected. The adapter stops retrying until restart."""


class MalformedDataError(InformarrError):
    """A service returned a record with an unexpected shape."""


class DispatchError(InformarrError):
    """A notification could not be delivered after all attempts."""

    def __init__(self, message: str, dedupe_key: Optional[str] = None):
        super().__init__(message)
        self.dedupe_key = dedupe_key
