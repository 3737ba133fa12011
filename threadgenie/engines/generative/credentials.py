"""
Credential Gate

Holds the API key used by the generative client. The key is read at call
time, so a key provided while the service is running takes effect for the
next generative call.
"""

import asyncio
from typing import Optional, Protocol, runtime_checkable

from threadgenie.core.exceptions import CredentialUnavailable
from threadgenie.core.logging import get_logger

logger = get_logger(__name__)


@runtime_checkable
class CredentialGate(Protocol):
    def has_credential(self) -> bool:
        ...

    async def request_credential(self) -> None:
        ...


class ApiKeyGate:
    """
    In-memory API key holder.

    request_credential() suspends until provide() is called or wait_timeout
    seconds pass, whichever comes first. A timeout of 0 fails immediately
    when no key is present.
    """

    def __init__(self, api_key: Optional[str] = None, wait_timeout: float = 0.0):
        self._api_key = api_key or None
        self.wait_timeout = wait_timeout
        self._provided = asyncio.Event()
        if self._api_key:
            self._provided.set()

    @property
    def api_key(self) -> Optional[str]:
        return self._api_key

    def has_credential(self) -> bool:
        return self._api_key is not None

    def provide(self, api_key: str):
        """Store a new key and wake any pending request."""
        if not api_key or not api_key.strip():
            raise ValueError("API key must not be empty")
        self._api_key = api_key.strip()
        self._provided.set()
        logger.info("credential_provided")

    def revoke(self):
        self._api_key = None
        self._provided.clear()
        logger.info("credential_revoked")

    async def request_credential(self) -> None:
        if self.has_credential():
            return

        logger.info("credential_requested", wait_timeout=self.wait_timeout)
        if self.wait_timeout > 0:
            try:
                await asyncio.wait_for(self._provided.wait(), timeout=self.wait_timeout)
            except asyncio.TimeoutError:
                pass

        if not self.has_credential():
            raise CredentialUnavailable(
                f"No API key was provided within {self.wait_timeout:g}s"
            )
