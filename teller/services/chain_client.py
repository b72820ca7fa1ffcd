"""
Minimal EVM JSON-RPC client for watching USDC transfers into the Safe.

Speaks plain JSON-RPC over aiohttp: eth_blockNumber for the head and
eth_getLogs filtered on the ERC-20 Transfer event with the Safe as the
indexed recipient.
"""

import asyncio
import itertools
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

import aiohttp
import structlog

from teller.core.config import settings as default_settings, Settings, ChainConfig
from teller.core.exceptions import ConfigurationError, UpstreamUnavailableError


logger = structlog.get_logger(__name__)


@dataclass
class TransferEvent:
    """An ERC-20 Transfer log addressed to the collection Safe."""
    tx_hash: str
    sender: str
    recipient: str
    value: int
    block_number: int
    log_index: int

    def amount(self, decimals: int) -> Decimal:
        """Token amount with the contract's decimals applied."""
        return Decimal(self.value).scaleb(-decimals)


class ChainClient:
    """JSON-RPC client for the BASE chain."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self.logger = logger.bind(service="chain_client")
        self._session: Optional[aiohttp.ClientSession] = None
        self._ids = itertools.count(1)

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def initialize(self) -> None:
        if not self.settings.safe_address:
            raise ConfigurationError("SAFE_ADDRESS is required to watch payments")

        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.settings.rpc_timeout_seconds)
            )
        self.logger.info(
            "Chain client initialized",
            rpc_url=self.settings.base_rpc_url,
            safe=self.settings.safe_address,
            usdc_contract=self.settings.usdc_contract,
        )

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def get_block_number(self) -> int:
        result = await self._call("eth_blockNumber", [])
        return int(result, 16)

    async def get_transfers(self, from_block: int, to_block: int) -> List[TransferEvent]:
        """USDC Transfer events to the Safe in [from_block, to_block]."""
        logs = await self._call("eth_getLogs", [{
            "address": self.settings.usdc_contract,
            "fromBlock": hex(from_block),
            "toBlock": hex(to_block),
            "topics": [
                ChainConfig.TRANSFER_EVENT_TOPIC,
                None,
                ChainConfig.address_topic(self.settings.safe_address),
            ],
        }])

        events = [self._parse_log(log) for log in logs if not log.get("removed")]
        self.logger.debug(
            "Fetched transfer logs",
            from_block=from_block,
            to_block=to_block,
            count=len(events),
        )
        return events

    async def _call(self, method: str, params: List[Any]) -> Any:
        if self._session is None:
            await self.initialize()

        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}

        try:
            async with self._session.post(self.settings.base_rpc_url, json=payload) as response:
                if response.status != 200:
                    raise UpstreamUnavailableError(
                        f"RPC {method} returned HTTP {response.status}",
                        details={"method": method, "status": response.status},
                    )
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UpstreamUnavailableError(
                f"RPC {method} failed: {e}",
                details={"method": method},
            ) from e

        if data.get("error"):
            raise UpstreamUnavailableError(
                f"RPC {method} error: {data['error'].get('message', data['error'])}",
                details={"method": method, "error": data["error"]},
            )

        return data.get("result")

    @staticmethod
    def _parse_log(log: Dict[str, Any]) -> TransferEvent:
        topics = log["topics"]
        return TransferEvent(
            tx_hash=log["transactionHash"],
            sender="0x" + topics[1][-40:],
            recipient="0x" + topics[2][-40:],
            value=int(log["data"], 16),
            block_number=int(log["blockNumber"], 16),
            log_index=int(log.get("logIndex", "0x0"), 16),
        )
