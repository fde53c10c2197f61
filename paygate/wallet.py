"""
Wallet signers - who signs the payment authorization.

Contains:
- DeveloperSigner: operator-held key, signs without user interaction
- ConnectedSigner: delegates to the end user's own wallet, may wait on a human
- DeveloperWalletConfig: process-wide developer wallet derived from settings
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, Optional, Protocol
import asyncio
import copy
import logging

from eth_account import Account
from eth_account.messages import encode_typed_data
from web3 import Web3

from .config import Settings
from .errors import ConfigurationError, SigningError
from .models import (
    PaymentTerms,
    SignedAuthorization,
    SigningMode,
    TransferAuthorization,
    WalletStatusResponse,
)
from .settlement import build_typed_data

logger = logging.getLogger(__name__)

# EIP-1193 userRejectedRequest
USER_REJECTED_CODES = {4001, "4001", "ACTION_REJECTED"}


class UserRejectedRequest(Exception):
    """Raised by a connected wallet when the user declines to sign."""

    code = 4001


class WalletSigner:
    """Signs EIP-3009 transfer authorizations for one payer address."""

    mode: SigningMode

    async def resolve_address(self) -> str:
        raise NotImplementedError

    async def prepare(self, terms: PaymentTerms) -> None:
        """Hook run before the authorization is built (network checks)."""

    async def sign(
        self, terms: PaymentTerms, authorization: TransferAuthorization
    ) -> SignedAuthorization:
        typed_data = build_typed_data(terms, authorization)
        signature = await self._sign_typed_data(authorization.from_address, typed_data)
        return SignedAuthorization(
            authorization=authorization,
            signature=signature,
            salt=terms.salt,
            pay_to=terms.pay_to,
            facilitator_fee=str(terms.facilitator_fee),
            hook=terms.hook,
            hook_data=terms.hook_data,
        )

    async def _sign_typed_data(self, address: str, typed_data: Dict[str, Any]) -> str:
        raise NotImplementedError


class DeveloperSigner(WalletSigner):
    mode = SigningMode.DEVELOPER_WALLET

    def __init__(self, private_key: str) -> None:
        if not private_key.startswith("0x"):
            private_key = "0x" + private_key
        self._account = Account.from_key(private_key)
        self.address: str = self._account.address

    def __repr__(self) -> str:
        return f"DeveloperSigner(address={self.address!r})"

    async def resolve_address(self) -> str:
        return self.address

    async def _sign_typed_data(self, address: str, typed_data: Dict[str, Any]) -> str:
        if Web3.to_checksum_address(address) != self.address:
            raise SigningError(f"Developer wallet cannot sign for {address}")
        message = copy.deepcopy(typed_data)
        message["message"]["nonce"] = Web3.to_bytes(hexstr=message["message"]["nonce"])
        try:
            encoded = encode_typed_data(full_message=message)
            signed = self._account.sign_message(encoded)
        except Exception as exc:
            raise SigningError(f"Developer wallet failed to sign: {exc}") from exc
        return Web3.to_hex(signed.signature)


class ConnectedWallet(Protocol):
    """The end user's wallet, as exposed by whatever front end hosts the session."""

    address: Optional[str]

    async def sign_typed_data(self, address: str, typed_data: Dict[str, Any]) -> str:
        ...


class ConnectedSigner(WalletSigner):
    mode = SigningMode.CONNECTED_WALLET

    def __init__(self, wallet: Optional[ConnectedWallet], timeout: Optional[float] = None) -> None:
        self.wallet = wallet
        self.timeout = timeout if timeout and timeout > 0 else None

    async def resolve_address(self) -> str:
        address = getattr(self.wallet, "address", None) if self.wallet else None
        if not address:
            raise SigningError(
                "No wallet connected. Connect a wallet to sign payments.",
                reason=SigningError.NO_WALLET,
            )
        return Web3.to_checksum_address(address)

    async def prepare(self, terms: PaymentTerms) -> None:
        get_chain_id = getattr(self.wallet, "chain_id", None)
        if get_chain_id is None:
            return
        current = await get_chain_id()
        if current is None or int(current) == terms.chain_id:
            return
        logger.info("Wallet on chain %s, asking to switch to %s", current, terms.chain_id)
        switch_chain = getattr(self.wallet, "switch_chain", None)
        switched = bool(switch_chain) and await switch_chain(terms.chain_id)
        if not switched:
            raise SigningError(
                f"Please switch your wallet to chain {terms.chain_id} (currently {current})",
                reason=SigningError.WRONG_NETWORK,
            )

    async def _sign_typed_data(self, address: str, typed_data: Dict[str, Any]) -> str:
        request = self.wallet.sign_typed_data(address, typed_data)
        try:
            if self.timeout is None:
                return await request
            return await asyncio.wait_for(request, timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise SigningError(
                f"Wallet did not respond within {self.timeout:g} seconds",
                reason=SigningError.TIMEOUT,
            ) from exc
        except SigningError:
            raise
        except Exception as exc:
            if getattr(exc, "code", None) in USER_REJECTED_CODES:
                raise SigningError(
                    "Transaction cancelled by user", reason=SigningError.USER_CANCELLED
                ) from exc
            raise SigningError(f"Wallet failed to sign: {exc}") from exc


@dataclass(frozen=True)
class DeveloperWalletConfig:
    address: str
    signer: DeveloperSigner


@lru_cache(maxsize=4)
def _load_developer_wallet(private_key: str) -> DeveloperWalletConfig:
    try:
        signer = DeveloperSigner(private_key)
    except Exception as exc:
        # eth-account errors can quote the key, so keep only the error type
        raise ConfigurationError(
            f"Invalid developer private key ({type(exc).__name__})"
        ) from None
    logger.info("Developer wallet loaded: %s", signer.address)
    return DeveloperWalletConfig(address=signer.address, signer=signer)


def get_developer_wallet(settings: Settings) -> Optional[DeveloperWalletConfig]:
    """
    Derive the developer wallet once per key.

    Returns None when no key is configured; raises ConfigurationError when
    the configured key cannot be parsed.
    """
    if not settings.developer_wallet_configured:
        return None
    return _load_developer_wallet(settings.developer_private_key.strip())


def wallet_status(settings: Settings) -> WalletStatusResponse:
    try:
        wallet = get_developer_wallet(settings)
    except ConfigurationError as exc:
        return WalletStatusResponse(
            configured=False, error=f"Failed to derive wallet address: {exc}"
        )
    if wallet is None:
        return WalletStatusResponse(
            configured=False, error="DEVELOPER_PRIVATE_KEY not configured"
        )
    return WalletStatusResponse(configured=True, address=wallet.address)
