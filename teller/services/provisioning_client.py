"""
NXT Layer provisioning backends.

The worker needs two operations: create an address for an agent and send
value to an address on a chain. HttpProvisioningBackend calls the NXT Layer
provisioning API; SimulatedProvisioningBackend stands in until that API is
live, deriving the address from the agent id.
"""

import asyncio
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Optional

import aiohttp
import structlog

from teller.core.config import settings as default_settings, Settings
from teller.core.exceptions import ConfigurationError, ProvisioningError


logger = structlog.get_logger(__name__)


class ProvisioningBackend(ABC):
    """Account and value operations on the provisioning side."""

    @abstractmethod
    async def create_address(self, agent_id: str) -> str:
        """Create an NXT Layer account for the agent and return its address."""

    @abstractmethod
    async def send_value(self, address: str, chain: str, amount: Decimal) -> None:
        """Send amount (USD-denominated gas) to address on chain."""

    async def close(self) -> None:
        pass


class SimulatedProvisioningBackend(ProvisioningBackend):
    """Backend that derives addresses locally and only logs transfers."""

    def __init__(self, latency_seconds: float = 0.5):
        self.latency_seconds = latency_seconds
        self.logger = logger.bind(service="simulated_provisioning")

    async def create_address(self, agent_id: str) -> str:
        self.logger.info("Creating account on NXT Layer", agent_id=agent_id)
        await asyncio.sleep(self.latency_seconds)

        address = f"nxt1{agent_id[2:42].lower()}"
        self.logger.info("Account created", agent_id=agent_id, address=address)
        return address

    async def send_value(self, address: str, chain: str, amount: Decimal) -> None:
        self.logger.info("Sending gas", address=address, chain=chain, amount=str(amount))
        await asyncio.sleep(self.latency_seconds)


class HttpProvisioningBackend(ProvisioningBackend):
    """Backend calling the NXT Layer provisioning HTTP API."""

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout_seconds: int = 30):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.logger = logger.bind(service="http_provisioning")
        self._session: Optional[aiohttp.ClientSession] = None

    async def create_address(self, agent_id: str) -> str:
        data = await self._post("/accounts", {"agent_id": agent_id})
        address = data.get("address")
        if not address:
            raise ProvisioningError(
                "Provisioning API returned no address",
                details={"agent_id": agent_id},
            )
        self.logger.info("Account created", agent_id=agent_id, address=address)
        return address

    async def send_value(self, address: str, chain: str, amount: Decimal) -> None:
        await self._post("/transfers", {
            "address": address,
            "chain": chain,
            "amount": str(amount),
        })
        self.logger.info("Gas sent", address=address, chain=chain, amount=str(amount))

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def _post(self, path: str, payload: dict) -> dict:
        if self._session is None:
            headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
            self._session = aiohttp.ClientSession(
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
            )

        try:
            async with self._session.post(f"{self.base_url}{path}", json=payload) as response:
                if response.status >= 400:
                    body = await response.text()
                    raise ProvisioningError(
                        f"Provisioning API {path} returned HTTP {response.status}",
                        details={"status": response.status, "body": body[:500]},
                    )
                return await response.json(content_type=None) or {}
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ProvisioningError(f"Provisioning API {path} unreachable: {e}") from e


def create_provisioning_backend(settings: Optional[Settings] = None) -> ProvisioningBackend:
    """Build the backend selected by PROVISIONING_BACKEND."""
    settings = settings or default_settings

    if settings.provisioning_backend == "http":
        if not settings.provisioning_api_url:
            raise ConfigurationError("PROVISIONING_API_URL is required for the http backend")
        return HttpProvisioningBackend(
            settings.provisioning_api_url,
            api_key=settings.provisioning_api_key,
            timeout_seconds=settings.provisioning_timeout_seconds,
        )

    return SimulatedProvisioningBackend(latency_seconds=settings.simulated_latency_seconds)
