"""Async client for the Tesla Powerwall gateway local API."""

from __future__ import annotations

import asyncio
import hashlib
import ssl
import time
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar
from urllib.parse import quote, urlsplit

from aiohttp import ClientSession, ClientTimeout, Fingerprint
from aiohttp.client_exceptions import ClientConnectionError, ClientError, ClientPayloadError

from powerwall_exporter import models, util

CONSOLE = util.CONSOLE

REQUEST_TIMEOUT = 10
LOGIN_USERNAME = "customer"

T = TypeVar("T")


class PowerwallError(Exception):
    """Base class for errors talking to the gateway."""


class TransportError(PowerwallError):
    """The connection to the gateway failed (refused, reset, timed out, TLS)."""


class ApiError(PowerwallError):
    """The gateway answered, but not with what was expected."""


class AuthenticationError(ApiError):
    """The gateway rejected the login credentials."""


class _Unauthorized(ApiError):
    pass


class PowerwallClient:
    """Fetches records from the gateway.

    Transport errors are retried according to :meth:`set_retry`; every
    other error is raised as an :class:`ApiError` straight away.
    """

    def __init__(
        self,
        address: str,
        email: str,
        password: str,
        session: Optional[ClientSession] = None,
    ) -> None:
        self.address = address
        self.email = email
        self._password = password
        self._session = session
        self._owns_session = session is None
        self._token: Optional[str] = None
        self._login_lock = asyncio.Lock()
        self._fingerprint: Optional[bytes] = None
        self.retry_interval = 1.0
        self.retry_timeout = 0.0

    @property
    def base_url(self) -> str:
        if "://" in self.address:
            return self.address.rstrip("/")
        return f"https://{self.address}"

    def _host_port(self) -> Tuple[str, int]:
        parts = urlsplit(self.base_url)
        default_port = 443 if parts.scheme == "https" else 80
        return parts.hostname or self.address, parts.port or default_port

    def set_retry(self, interval: float, timeout: float) -> None:
        """Retry transport errors every ``interval`` seconds for up to ``timeout`` seconds."""
        self.retry_interval = max(0.0, interval)
        self.retry_timeout = max(0.0, timeout)

    def set_tls_cert(self, pem: str) -> None:
        """Only accept connections presenting exactly this certificate."""
        der = ssl.PEM_cert_to_DER_cert(pem)
        self._fingerprint = hashlib.sha256(der).digest()

    async def fetch_tls_cert(self) -> str:
        """Return the PEM encoded certificate the gateway presents."""
        host, port = self._host_port()
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(
                None, lambda: ssl.get_server_certificate((host, port), timeout=REQUEST_TIMEOUT)
            )
        except (OSError, ssl.SSLError) as err:
            raise TransportError(f"Unable to retrieve certificate from {host}:{port}: {err}") from err

    def _ssl(self) -> Any:
        if self._fingerprint is not None:
            return Fingerprint(self._fingerprint)
        # The gateway uses a self-signed certificate
        return False

    def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> "PowerwallClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _request_once(
        self, method: str, path: str, json_body: Optional[Dict[str, Any]], auth: bool
    ) -> Any:
        headers = {}
        if auth:
            headers["Authorization"] = f"Bearer {await self._ensure_token()}"
        url = self.base_url + path
        try:
            async with self._get_session().request(
                method,
                url,
                json=json_body,
                headers=headers,
                ssl=self._ssl(),
                timeout=ClientTimeout(total=REQUEST_TIMEOUT),
            ) as resp:
                CONSOLE.debug("%s %s -> %s", method, path, resp.status)
                if resp.status in (401, 403):
                    if auth:
                        raise _Unauthorized(f"{method} {path}: HTTP {resp.status}")
                    raise AuthenticationError(f"Login rejected by gateway: HTTP {resp.status}")
                if resp.status >= 400:
                    body = await resp.text()
                    raise ApiError(f"{method} {path}: HTTP {resp.status}: {body[:200]}")
                try:
                    return await resp.json(content_type=None)
                except ValueError as err:
                    raise ApiError(f"{method} {path}: invalid JSON in response: {err}") from err
        except (ClientConnectionError, ClientPayloadError, asyncio.TimeoutError) as err:
            raise TransportError(f"{method} {url}: {type(err).__name__}: {err}") from err
        except ClientError as err:
            raise ApiError(f"{method} {url}: {type(err).__name__}: {err}") from err

    async def _request(
        self,
        method: str,
        path: str,
        json_body: Optional[Dict[str, Any]] = None,
        auth: bool = True,
    ) -> Any:
        deadline = time.monotonic() + self.retry_timeout
        while True:
            try:
                return await self._request_once(method, path, json_body, auth)
            except TransportError as err:
                if self.retry_timeout <= 0 or time.monotonic() + self.retry_interval > deadline:
                    raise
                CONSOLE.debug("Retrying %s %s in %ss: %s", method, path, self.retry_interval, err)
                await asyncio.sleep(self.retry_interval)

    async def login(self) -> None:
        data = await self._request(
            "POST",
            "/api/login/Basic",
            json_body={
                "username": LOGIN_USERNAME,
                "email": self.email,
                "password": self._password,
                "force_sm_off": False,
            },
            auth=False,
        )
        token = data.get("token") if isinstance(data, dict) else None
        if not token:
            raise AuthenticationError("Login response did not contain a token")
        self._token = str(token)
        CONSOLE.debug("Logged in to gateway %s", self.address)

    async def _ensure_token(self) -> str:
        async with self._login_lock:
            if self._token is None:
                await self.login()
            return self._token

    async def _get_json(self, path: str) -> Any:
        try:
            return await self._request("GET", path)
        except _Unauthorized:
            CONSOLE.debug("Auth token rejected for %s, logging in again", path)
            self._token = None
        try:
            return await self._request("GET", path)
        except _Unauthorized as err:
            raise AuthenticationError(f"Gateway keeps rejecting authentication: {err}") from err

    async def _fetch(self, path: str, parse: Callable[[Any], T]) -> T:
        data = await self._get_json(path)
        try:
            return parse(data)
        except (KeyError, TypeError, ValueError) as err:
            raise ApiError(f"Malformed response from {path}: {err}") from err

    async def get_status(self) -> models.Status:
        return await self._fetch("/api/status", models.Status.from_json)

    async def get_state_of_energy(self) -> models.StateOfEnergy:
        return await self._fetch("/api/system_status/soe", models.StateOfEnergy.from_json)

    async def get_operation(self) -> models.Operation:
        return await self._fetch("/api/operation", models.Operation.from_json)

    async def get_sitemaster(self) -> models.Sitemaster:
        return await self._fetch("/api/sitemaster", models.Sitemaster.from_json)

    async def get_problems(self) -> models.Problems:
        return await self._fetch("/api/troubleshooting/problems", models.Problems.from_json)

    async def get_system_status(self) -> models.SystemStatus:
        return await self._fetch("/api/system_status", models.SystemStatus.from_json)

    async def get_meter_aggregates(self) -> Dict[str, models.MeterReading]:
        return await self._fetch("/api/meters/aggregates", models.meter_aggregates_from_json)

    async def get_meters(self, category: str) -> List[models.Meter]:
        return await self._fetch(f"/api/meters/{quote(category, safe='')}", models.meters_from_json)

    async def get_networks(self) -> List[models.Network]:
        return await self._fetch("/api/networks", models.networks_from_json)
