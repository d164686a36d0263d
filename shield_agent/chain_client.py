"""
On-chain access for the shield agent.

Reads go through a ChainReader (web3.py against the finalized block), wrapped
by BudgetedReader so that every call is charged against the cycle's read
budget. Writes are encoded here and handed to an OnchainWriter, which either
forwards them to a signing relay or logs them in dry-run mode.
"""
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Dict, List, Optional, Sequence

import httpx
import structlog
from eth_abi import encode
from web3 import AsyncWeb3, Web3

from .config import settings
from .error_handling import BudgetExceededError, ChainReadError, WriteError
from .models import WriteResult

logger = structlog.get_logger()


class CallBudget:
    """Fixed number of external calls available to one cycle"""

    def __init__(self, limit: int, name: str = "chain_reads"):
        self.limit = limit
        self.name = name
        self.spent = 0

    @property
    def remaining(self) -> int:
        return self.limit - self.spent

    def can_afford(self, cost: int) -> bool:
        return cost <= self.remaining

    def spend(self, cost: int = 1, what: str = "call"):
        if not self.can_afford(cost):
            raise BudgetExceededError(what, cost, self.remaining)
        self.spent += cost

    def __repr__(self):
        return f"CallBudget(name={self.name!r}, spent={self.spent}, limit={self.limit})"


class ChainReader(ABC):
    """Read-only contract access"""

    @abstractmethod
    async def call(self, address: str, abi: List[Dict], function: str, args: Sequence[Any] = ()) -> Any:
        """Call a view function and return its decoded result"""

    async def close(self):
        pass


def _checksum_args(args: Sequence[Any]) -> List[Any]:
    return [
        Web3.to_checksum_address(arg)
        if isinstance(arg, str) and arg.startswith("0x") and len(arg) == 42 else arg
        for arg in args
    ]


class Web3ChainReader(ChainReader):
    """web3.py reader pinned to the finalized block"""

    def __init__(self, rpc_url: str, timeout: float = None, block_identifier: str = "finalized"):
        self.rpc_url = rpc_url
        self.block_identifier = block_identifier
        self.w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(
            rpc_url,
            request_kwargs={"timeout": timeout or settings.HTTP_TIMEOUT_SECONDS}
        ))

    async def call(self, address: str, abi: List[Dict], function: str, args: Sequence[Any] = ()) -> Any:
        try:
            contract = self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)
            return await contract.functions[function](*_checksum_args(args)).call(
                block_identifier=self.block_identifier
            )
        except Exception as e:
            raise ChainReadError(f"{function} on {address} failed: {e}") from e

    async def close(self):
        await self.w3.provider.disconnect()


class BudgetedReader(ChainReader):
    """Charges one budget unit per call before delegating"""

    def __init__(self, reader: ChainReader, budget: CallBudget):
        self.reader = reader
        self.budget = budget

    async def call(self, address: str, abi: List[Dict], function: str, args: Sequence[Any] = ()) -> Any:
        self.budget.spend(1, f"{function}@{address}")
        return await self.reader.call(address, abi, function, args)

    async def close(self):
        await self.reader.close()


def encode_call(signature: str, types: Sequence[str], args: Sequence[Any]) -> bytes:
    """ABI-encode a function call: 4-byte selector followed by the arguments"""
    selector = Web3.keccak(text=signature)[:4]
    return bytes(selector) + encode(list(types), list(args))


class OnchainWriter(ABC):
    """Submits encoded calls for signing and broadcast"""

    @abstractmethod
    async def submit(self, address: str, calldata: bytes, label: str = "", chain: str = "") -> WriteResult:
        """Submit calldata to a contract; raises WriteError on rejection"""

    async def close(self):
        pass


class RelayWriter(OnchainWriter):
    """Forwards encoded reports to a signing relay over HTTP"""

    def __init__(self, relay_url: str, timeout: float = None):
        self.relay_url = relay_url
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECONDS
        self.client = httpx.AsyncClient(timeout=self.timeout)

    async def submit(self, address: str, calldata: bytes, label: str = "", chain: str = "") -> WriteResult:
        payload = {
            "chain": chain,
            "receiver": address,
            "report": "0x" + calldata.hex(),
            "label": label
        }

        try:
            response = await self.client.post(self.relay_url, json=payload)
            response.raise_for_status()
            body = response.json()
            if not isinstance(body, dict):
                body = {}
        except httpx.HTTPStatusError as e:
            raise WriteError(f"Relay rejected {label}: {e.response.status_code}") from e
        except (httpx.RequestError, ValueError) as e:
            raise WriteError(f"Relay request for {label} failed: {e}") from e

        if not body.get("success", True):
            raise WriteError(f"Relay rejected {label}: {body.get('error', 'unknown error')}")

        logger.info("Write submitted", label=label, receiver=address, tx_hash=body.get("tx_hash"))
        return WriteResult(success=True, message=f"{label} submitted", tx_hash=body.get("tx_hash"))

    async def close(self):
        await self.client.aclose()


class DryRunWriter(OnchainWriter):
    """Logs writes instead of submitting them; keeps the most recent ones for inspection"""

    def __init__(self, max_entries: int = None):
        self.submissions: deque = deque(maxlen=max_entries or settings.HISTORY_MAX_ENTRIES)

    async def submit(self, address: str, calldata: bytes, label: str = "", chain: str = "") -> WriteResult:
        self.submissions.append({"chain": chain, "receiver": address, "calldata": calldata, "label": label})
        logger.info("Dry-run write", label=label, chain=chain, receiver=address, calldata_bytes=len(calldata))
        return WriteResult(success=True, message=f"{label} recorded (dry run)")


def build_writer(relay_url: Optional[str] = None) -> OnchainWriter:
    relay_url = relay_url or settings.WRITER_RELAY_URL
    if relay_url:
        return RelayWriter(relay_url)
    logger.warning("No writer relay configured - writes run in dry-run mode")
    return DryRunWriter()
