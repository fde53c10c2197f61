"""
Signing mode - decides whether the developer wallet or the user's own
connected wallet pays for a session.

State is an explicit immutable value. Transitions are plain functions
returning a new state, so the executor is always handed the mode it runs in
rather than reading it from ambient globals.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Awaitable, Callable, Optional
import logging

import httpx

from .config import Settings
from .models import SigningMode, WalletStatusResponse
from .wallet import wallet_status

logger = logging.getLogger(__name__)


WalletStatusProbe = Callable[[], Awaitable[WalletStatusResponse]]


class ControllerPhase(str, Enum):
    LOADING = "loading"
    CONNECTED_WALLET = "connected-wallet"
    DEVELOPER_WALLET = "developer-wallet"


_PHASE_BY_MODE = {
    SigningMode.CONNECTED_WALLET: ControllerPhase.CONNECTED_WALLET,
    SigningMode.DEVELOPER_WALLET: ControllerPhase.DEVELOPER_WALLET,
}


@dataclass(frozen=True)
class SigningModeState:
    phase: ControllerPhase = ControllerPhase.LOADING
    developer_wallet_configured: bool = False
    developer_wallet_address: Optional[str] = None

    @property
    def is_loading(self) -> bool:
        return self.phase == ControllerPhase.LOADING

    @property
    def mode(self) -> Optional[SigningMode]:
        if self.is_loading:
            return None
        return SigningMode(self.phase.value)


class SigningModeController:
    def __init__(self, probe: WalletStatusProbe) -> None:
        self.probe = probe

    async def initialize(self) -> SigningModeState:
        """
        Resolve the initial mode from the developer wallet status.

        Never raises: any probe failure falls back to the connected wallet
        with no developer address recorded.
        """
        try:
            status = await self.probe()
        except Exception as exc:
            logger.warning("Developer wallet status probe failed: %s", exc)
            return SigningModeState(phase=ControllerPhase.CONNECTED_WALLET)

        if status.configured and status.address:
            return SigningModeState(
                phase=ControllerPhase.DEVELOPER_WALLET,
                developer_wallet_configured=True,
                developer_wallet_address=status.address,
            )
        return SigningModeState(phase=ControllerPhase.CONNECTED_WALLET)

    @staticmethod
    def set_mode(state: SigningModeState, target: SigningMode) -> SigningModeState:
        target = SigningMode(target)
        if target == SigningMode.DEVELOPER_WALLET and not state.developer_wallet_configured:
            logger.debug("Ignoring switch to developer wallet: not configured")
            return state
        if state.is_loading:
            logger.debug("Ignoring mode switch while wallet status is loading")
            return state
        return replace(state, phase=_PHASE_BY_MODE[target])

    @staticmethod
    def active_wallet_address(
        state: SigningModeState, connected_address: Optional[str]
    ) -> Optional[str]:
        if state.phase == ControllerPhase.DEVELOPER_WALLET:
            return state.developer_wallet_address
        return connected_address


def local_wallet_probe(settings: Settings) -> WalletStatusProbe:
    """Probe for a session hosted in the same process as the developer key."""

    async def probe() -> WalletStatusResponse:
        return wallet_status(settings)

    return probe


def remote_wallet_probe(api_url: str, client: httpx.AsyncClient, timeout: float = 30.0) -> WalletStatusProbe:
    """Probe the hosting service's /wallet-status endpoint."""

    async def probe() -> WalletStatusResponse:
        response = await client.get(f"{api_url.rstrip('/')}/wallet-status", timeout=timeout)
        response.raise_for_status()
        return WalletStatusResponse.model_validate(response.json())

    return probe
