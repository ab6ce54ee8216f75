"""
Webhook authentication.

Two credential kinds are accepted:
- A shared bearer secret: "Authorization: Bearer <secret>"
- A scoped API key: "X-API-Key: <key>", looked up by its sha256 hash and
  granting "webhook:<flow>" or "webhook:*" permissions

Invariants:
    - Secrets are compared in constant time
    - Plain API keys are never stored or logged, only their hashes
    - The bearer secret grants every flow
    - An API key writes only to its own tenant; the bearer secret does too
      when webhook_secret_tenant_id is set

How to change safely:
    - New permission strings must keep the "webhook:<flow>" shape
    - Disabled authentication is for local development only; it is
      logged as a warning
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, Optional

from ..errors import AuthenticationError, PermissionDeniedError
from .settings import ApiKeyConfig, Settings

logger = logging.getLogger(__name__)

WILDCARD_PERMISSION = "webhook:*"


def hash_api_key(key: str) -> str:
    """Hex sha256 of an API key, as stored in configuration."""
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def webhook_permission(flow: str) -> str:
    return f"webhook:{flow}"


def tenant_permission(tenant_id: str) -> str:
    return f"tenant:{tenant_id}"


@dataclass(frozen=True)
class Caller:
    """An authenticated webhook caller.

    Attributes:
        name: "bearer", the API key's name, or "anonymous"
        permissions: Granted permission strings
        tenant_id: Tenant the credential is bound to; None lets the
            request choose with X-Tenant-ID
    """

    name: str
    permissions: FrozenSet[str]
    tenant_id: Optional[str] = None

    def can_post(self, flow: str) -> bool:
        return WILDCARD_PERMISSION in self.permissions or webhook_permission(flow) in self.permissions

    def check_tenant(self, requested: Optional[str]) -> None:
        """Reject a requested tenant other than the bound one.

        Raises:
            PermissionDeniedError: If the credential is bound to another tenant
        """
        if self.tenant_id is None or not requested or requested == self.tenant_id:
            return
        logger.warning(
            "Credential used for another tenant",
            extra={"key_name": self.name, "tenant_id": self.tenant_id, "requested_tenant_id": requested},
        )
        raise PermissionDeniedError(
            f"'{self.name}' may not write to tenant '{requested}'",
            permission=tenant_permission(requested),
        )


class WebhookAuthenticator:
    """Authenticates webhook requests against the configured credentials."""

    def __init__(
        self,
        secret: Optional[str] = None,
        api_keys: Iterable[ApiKeyConfig] = (),
        secret_tenant_id: Optional[str] = None,
    ) -> None:
        self._secret = secret or None
        self._secret_tenant_id = secret_tenant_id or None
        self._keys: Dict[str, ApiKeyConfig] = {key.key_hash.lower(): key for key in api_keys}
        self._warned = False

    @classmethod
    def from_settings(cls, settings: Settings) -> WebhookAuthenticator:
        return cls(
            secret=settings.webhook_secret,
            api_keys=settings.api_keys,
            secret_tenant_id=settings.webhook_secret_tenant_id,
        )

    @property
    def enabled(self) -> bool:
        return self._secret is not None or bool(self._keys)

    def authenticate(
        self,
        flow: str,
        authorization: Optional[str] = None,
        api_key: Optional[str] = None,
    ) -> Caller:
        """Authenticate a request for a flow.

        Args:
            flow: Flow being posted to
            authorization: Authorization header value
            api_key: X-API-Key header value

        Returns:
            The authenticated caller

        Raises:
            AuthenticationError: If credentials are missing or invalid
            PermissionDeniedError: If the API key lacks webhook:<flow>
        """
        if not self.enabled:
            if not self._warned:
                logger.warning("Webhook authentication is disabled (no secret or API keys configured)")
                self._warned = True
            return Caller(name="anonymous", permissions=frozenset({WILDCARD_PERMISSION}))

        if authorization:
            scheme, _, token = authorization.partition(" ")
            if scheme.lower() != "bearer" or not token.strip():
                raise AuthenticationError("Malformed Authorization header")
            if self._secret is not None and hmac.compare_digest(
                token.strip().encode("utf-8"), self._secret.encode("utf-8")
            ):
                return Caller(
                    name="bearer",
                    permissions=frozenset({WILDCARD_PERMISSION}),
                    tenant_id=self._secret_tenant_id,
                )
            if not api_key:
                raise AuthenticationError("Invalid bearer token")

        if api_key:
            caller = self._lookup_key(api_key)
            if not caller.can_post(flow):
                logger.warning(
                    "API key lacks webhook permission",
                    extra={"key_name": caller.name, "flow": flow},
                )
                raise PermissionDeniedError(
                    f"API key '{caller.name}' may not post to flow '{flow}'",
                    permission=webhook_permission(flow),
                )
            return caller

        raise AuthenticationError("Missing credentials")

    def _lookup_key(self, api_key: str) -> Caller:
        digest = hash_api_key(api_key)
        for key_hash, config in self._keys.items():
            if hmac.compare_digest(digest, key_hash):
                return Caller(
                    name=config.name,
                    permissions=frozenset(config.permissions),
                    tenant_id=config.tenant_id,
                )
        raise AuthenticationError("Invalid API key")
