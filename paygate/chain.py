"""
Chain reads - optional EVM RPC access for the payment protocol.

Only read-only calls are made here: token balances, the token's EIP-712
domain and the settlement router's own commitment. Web3's HTTP provider is
blocking, so every call runs in a worker thread.
"""

from typing import Optional, Tuple
import asyncio
import logging

from web3 import Web3
from web3.exceptions import Web3Exception

from .errors import NetworkError
from .models import PaymentTerms
from .settlement import SETTLEMENT_ROUTER_ABI

logger = logging.getLogger(__name__)


ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "type": "function"
    },
    {
        "constant": True,
        "inputs": [],
        "name": "name",
        "outputs": [{"name": "", "type": "string"}],
        "type": "function"
    },
    {
        "constant": True,
        "inputs": [],
        "name": "version",
        "outputs": [{"name": "", "type": "string"}],
        "type": "function"
    },
]


class ChainReader:
    """Read-only view of the chain a service settles on."""

    def __init__(self, rpc_url: str, timeout: float = 30.0):
        self.rpc_url = rpc_url
        self.w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))

    async def token_balance(self, token: str, owner: str) -> int:
        def call() -> int:
            contract = self.w3.eth.contract(
                address=Web3.to_checksum_address(token), abi=ERC20_ABI
            )
            return contract.functions.balanceOf(Web3.to_checksum_address(owner)).call()

        return await self._run(call, "read token balance")

    async def token_domain(self, token: str, default: Tuple[str, str]) -> Tuple[str, str]:
        """Return (name, version) of the token's EIP-712 domain, keeping defaults on failure."""
        name, version = default

        def call_name() -> str:
            contract = self.w3.eth.contract(
                address=Web3.to_checksum_address(token), abi=ERC20_ABI
            )
            return contract.functions.name().call()

        def call_version() -> str:
            contract = self.w3.eth.contract(
                address=Web3.to_checksum_address(token), abi=ERC20_ABI
            )
            return contract.functions.version().call()

        try:
            name = await self._run(call_name, "read token name")
        except NetworkError as exc:
            logger.warning("Could not read token name for %s: %s", token, exc)
            return name, version
        try:
            version = await self._run(call_version, "read token version")
        except NetworkError:
            # Not every EIP-3009 token exposes version()
            pass
        return name, version

    async def commitment(
        self,
        terms: PaymentTerms,
        payer: str,
        valid_after: int,
        valid_before: int,
        salt: str,
    ) -> str:
        def call() -> str:
            router = self.w3.eth.contract(
                address=terms.settlement_router, abi=SETTLEMENT_ROUTER_ABI
            )
            result = router.functions.calculateCommitment(
                terms.token,
                Web3.to_checksum_address(payer),
                terms.value,
                valid_after,
                valid_before,
                Web3.to_bytes(hexstr=salt),
                terms.pay_to,
                terms.facilitator_fee,
                terms.hook,
                Web3.to_bytes(hexstr=terms.hook_data),
            ).call()
            return Web3.to_hex(result)

        return await self._run(call, "calculate settlement commitment")

    async def _run(self, func, action: str):
        try:
            return await asyncio.to_thread(func)
        except (Web3Exception, OSError, ValueError) as exc:
            raise NetworkError(f"Failed to {action}: {exc}") from exc


def build_chain_reader(rpc_url: str, timeout: float = 30.0) -> Optional[ChainReader]:
    if not rpc_url:
        return None
    return ChainReader(rpc_url, timeout=timeout)
