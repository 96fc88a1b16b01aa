"""
Device credential handling.

Exchanges the provisioned device secret for a short-lived bearer token and
refreshes it ahead of expiry. The token lives in memory only.

A refused token is expiry: drop it and exchange again. A refused secret is
revocation: stop all network work and wait for re-provisioning.
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, Union

import requests
from pydantic import BaseModel, ValidationError, field_validator

from .errors import CredentialRevoked, DeliveryFailure

logger = logging.getLogger(__name__)


def _to_epoch(value: Union[int, float, str, datetime]) -> float:
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return value.timestamp()


class TokenResponse(BaseModel):
    """Body returned by the credential exchange."""
    token: str
    issued_at: float
    expires_at: float

    @field_validator("issued_at", "expires_at", mode="before")
    @classmethod
    def _epoch(cls, value):
        return _to_epoch(value)


@dataclass(frozen=True)
class Credential:
    token: str
    issued_at: float
    expires_at: float

    def __repr__(self) -> str:
        return f"Credential(issued_at={self.issued_at}, expires_at={self.expires_at})"


class CredentialManager:
    """
    Bearer token source for the primary transport.

    Usage:
        creds = CredentialManager(session, auth_url, device_id,
                                  secret_path="/opt/access-edge/secrets/device_secret")
        headers = {"Authorization": f"Bearer {creds.get_token()}"}
        ...
        creds.invalidate()   # after a 401 from the backend
    """

    def __init__(
        self,
        session: requests.Session,
        auth_url: str,
        device_id: str,
        secret_path: Optional[str] = None,
        secret_loader: Optional[Callable[[], str]] = None,
        timeout: float = 10.0,
        refresh_margin: float = 60.0,
        verify_ssl: bool = True,
        clock: Callable[[], float] = time.time,
        on_revoked: Optional[Callable[[str], None]] = None,
    ):
        """
        Initialize credential manager.

        Args:
            session: HTTP session shared with the sync client
            auth_url: Credential exchange endpoint
            device_id: This device's id
            secret_path: File holding the provisioned device secret
            secret_loader: Alternative to secret_path, returns the secret
            timeout: Exchange timeout in seconds
            refresh_margin: Refresh this many seconds before expiry
            verify_ssl: Verify TLS certificates
            clock: Wall clock returning epoch seconds
            on_revoked: Called with a reason when the secret is refused
        """
        if secret_loader is None and secret_path is None:
            raise ValueError("secret_path or secret_loader is required")

        self.session = session
        self.auth_url = auth_url
        self.device_id = device_id
        self.timeout = timeout
        self.refresh_margin = refresh_margin
        self.verify_ssl = verify_ssl
        self.clock = clock
        self.on_revoked = on_revoked
        self._secret_loader = secret_loader or (lambda: Path(secret_path).read_text().strip())

        self._lock = threading.Lock()
        self._credential: Optional[Credential] = None
        self._revoked_reason: Optional[str] = None

        self.stats = {
            "exchanges": 0,
            "exchange_failures": 0,
            "invalidations": 0,
        }

    @property
    def needs_provisioning(self) -> bool:
        return self._revoked_reason is not None

    @property
    def credential(self) -> Optional[Credential]:
        return self._credential

    def get_token(self) -> str:
        """
        A valid bearer token, exchanging the secret if needed.

        Raises:
            CredentialRevoked: If the device must be re-provisioned
            DeliveryFailure: If the exchange failed for a retryable reason
        """
        with self._lock:
            if self._revoked_reason is not None:
                raise CredentialRevoked(self._revoked_reason)

            cred = self._credential
            if cred is None or self.clock() >= cred.expires_at - self.refresh_margin:
                cred = self._exchange()
                self._credential = cred
            return cred.token

    def invalidate(self) -> None:
        """Forget the current token; the next get_token() re-authenticates."""
        with self._lock:
            if self._credential is not None:
                self.stats["invalidations"] += 1
                logger.info("Bearer token invalidated")
            self._credential = None

    def reset_provisioning(self) -> None:
        """Clear a revocation after the device secret was replaced."""
        with self._lock:
            if self._revoked_reason is not None:
                logger.info("Device re-provisioned, resuming credential exchange")
            self._revoked_reason = None
            self._credential = None

    def _exchange(self) -> Credential:
        try:
            secret = self._secret_loader()
        except OSError as e:
            self._revoke(f"device secret unavailable: {e}")
            raise CredentialRevoked(self._revoked_reason) from e
        if not secret:
            self._revoke("device secret is empty")
            raise CredentialRevoked(self._revoked_reason)

        self.stats["exchanges"] += 1
        try:
            response = self.session.post(
                self.auth_url,
                json={"device_id": self.device_id, "secret": secret},
                timeout=self.timeout,
                verify=self.verify_ssl,
            )
        except requests.exceptions.RequestException as e:
            self.stats["exchange_failures"] += 1
            raise DeliveryFailure(f"credential exchange failed: {e}") from e

        if response.status_code in (401, 403):
            self._revoke(f"credential exchange refused with HTTP {response.status_code}")
            raise CredentialRevoked(self._revoked_reason)

        if response.status_code >= 400:
            self.stats["exchange_failures"] += 1
            raise DeliveryFailure(f"credential exchange returned HTTP {response.status_code}")

        try:
            body = TokenResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            self.stats["exchange_failures"] += 1
            raise DeliveryFailure(f"malformed credential response: {e}") from e

        cred = Credential(token=body.token, issued_at=body.issued_at, expires_at=body.expires_at)
        logger.info(f"Bearer token issued, valid for {int(cred.expires_at - self.clock())}s")
        return cred

    def _revoke(self, reason: str) -> None:
        self._revoked_reason = reason
        self._credential = None
        logger.critical(f"Device credential revoked: {reason}. Re-provisioning required.")
        if self.on_revoked:
            self.on_revoked(reason)
