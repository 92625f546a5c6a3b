"""
Session authentication against the device web server.

Tokens live only a few seconds on the device side, so nothing is cached:
every upload asks for a new one right before using it. The JSON-RPC login
is tried first; older web UIs only hand out a `sysauth` cookie.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import httpx

from legacy_upgrade.errors import AuthError
from legacy_upgrade.logging import get_logger

if TYPE_CHECKING:
    from legacy_upgrade.config import AuthConfig
    from legacy_upgrade.models import Device

logger = get_logger(__name__)

# Session id the RPC endpoint accepts for unauthenticated calls
NULL_SESSION = "0" * 32
RPC_TOKEN_LENGTH = 32
MIN_COOKIE_TOKEN_LENGTH = 11
SESSION_COOKIE = "sysauth"


class SessionAuthenticator:
    """
    Obtains short-lived session tokens from the device.

    Attributes:
        device: Target device and credentials.
        config: Endpoint and timeout settings.
    """

    def __init__(
        self,
        device: Device,
        config: AuthConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the authenticator.

        Args:
            device: Target device and credentials.
            config: Authentication settings.
            transport: Optional httpx transport (tests inject a MockTransport).
        """
        self.device = device
        self.config = config
        self._transport = transport

    def client(self, timeout: float | None = None) -> httpx.AsyncClient:
        """An HTTP client bound to the device web server."""
        return httpx.AsyncClient(
            base_url=self.device.base_url,
            transport=self._transport,
            timeout=timeout or self.config.request_timeout,
        )

    def rpc_login_payload(self) -> dict[str, Any]:
        """JSON-RPC body for the session login call."""
        return {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "call",
            "params": [
                NULL_SESSION,
                "session",
                "login",
                {
                    "username": self.device.username,
                    "password": self.device.password or "",
                    "timeout": self.config.session_timeout,
                },
            ],
        }

    async def _rpc_login(self, client: httpx.AsyncClient) -> str | None:
        try:
            response = await client.post(
                self.config.rpc_endpoint, json=self.rpc_login_payload()
            )
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f"RPC login failed: {e}")
            return None

        # Success looks like {"result": [0, {"ubus_rpc_session": "..."}]}
        result = data.get("result") if isinstance(data, dict) else None
        if not isinstance(result, list) or len(result) < 2:
            return None
        session = result[1].get("ubus_rpc_session") if isinstance(result[1], dict) else None
        if isinstance(session, str) and len(session) == RPC_TOKEN_LENGTH:
            return session
        return None

    async def _cookie_login(self, client: httpx.AsyncClient) -> str | None:
        try:
            response = await client.post(
                self.config.cookie_login_endpoint,
                data={
                    "luci_username": self.device.username,
                    "luci_password": self.device.password or "",
                },
            )
        except httpx.HTTPError as e:
            logger.debug(f"Cookie login failed: {e}")
            return None

        session = response.cookies.get(SESSION_COOKIE) or client.cookies.get(
            SESSION_COOKIE
        )
        if session and len(session) >= MIN_COOKIE_TOKEN_LENGTH:
            return session
        return None

    async def login(self) -> str:
        """
        Request a fresh session token.

        Returns:
            Session token for the upload endpoint.

        Raises:
            AuthError: If neither login method yields a token.
        """
        async with self.client() as client:
            token = await self._rpc_login(client)
            if token is not None:
                logger.debug("Obtained session via RPC login")
                return token

            token = await self._cookie_login(client)
            if token is not None:
                logger.debug("Obtained session via cookie login")
                return token

        raise AuthError(
            f"Web login to {self.device.address} failed",
            details={"address": self.device.address, "user": self.device.username},
            remediation=f"Check the password by logging in at {self.device.base_url}",
        )
