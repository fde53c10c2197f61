"""
Payment session - the client-side facade a front end drives.

Wires the catalog, the signing-mode controller and the executor together
and keeps the current signing mode as an explicit state value.
"""

from typing import Any, Iterable, Mapping, Optional, Tuple, Union
import logging

import httpx

from .catalog import ServiceCatalog
from .chain import ChainReader
from .config import Settings
from .executor import LocalExecution, PaymentExecutor, RemoteExecution
from .models import DiscoverResponse, ProgressEvent, Service, SigningMode, Split
from .protocol import PaymentProtocol
from .signing_mode import (
    SigningModeController,
    SigningModeState,
    WalletStatusProbe,
    remote_wallet_probe,
)
from .stream import ProgressStream
from .wallet import ConnectedSigner, ConnectedWallet

logger = logging.getLogger(__name__)


class PaymentSession:
    def __init__(
        self,
        settings: Settings,
        client: httpx.AsyncClient,
        wallet: Optional[ConnectedWallet] = None,
        chain: Optional[ChainReader] = None,
        probe: Optional[WalletStatusProbe] = None,
    ) -> None:
        self.settings = settings
        self.client = client
        self.wallet = wallet
        self.catalog = ServiceCatalog(settings, client)
        self.controller = SigningModeController(
            probe
            or remote_wallet_probe(settings.api_url, client, settings.http_timeout_seconds)
        )
        self.state = SigningModeState()
        protocol = PaymentProtocol(settings, client, chain)
        self.executor = PaymentExecutor(
            {
                SigningMode.CONNECTED_WALLET: LocalExecution(
                    protocol, ConnectedSigner(wallet, settings.signing_timeout_seconds)
                ),
                SigningMode.DEVELOPER_WALLET: RemoteExecution(
                    settings.api_url,
                    client,
                    timeout=settings.http_timeout_seconds,
                    api_key=settings.api_key,
                ),
            }
        )

    async def start(self) -> SigningModeState:
        self.state = await self.controller.initialize()
        logger.info("Session signing mode: %s", self.state.phase.value)
        return self.state

    async def discover(self) -> DiscoverResponse:
        return await self.catalog.discover()

    def set_mode(self, mode: Union[SigningMode, str]) -> SigningModeState:
        self.state = self.controller.set_mode(self.state, SigningMode(mode))
        return self.state

    @property
    def mode(self) -> Optional[SigningMode]:
        return self.state.mode

    def active_wallet_address(self) -> Optional[str]:
        connected = getattr(self.wallet, "address", None) if self.wallet else None
        return self.controller.active_wallet_address(self.state, connected)

    def execute(
        self,
        service: Union[Service, Mapping[str, Any]],
        query: str = "",
        splits: Optional[Iterable[Split]] = None,
    ) -> ProgressStream:
        return self.executor.execute(service, self.state, query=query, splits=splits)

    def cancel(self) -> None:
        self.executor.cancel()

    def reset(self) -> None:
        self.executor.reset()

    @property
    def events(self) -> Tuple[ProgressEvent, ...]:
        return self.executor.session.events

    @property
    def is_executing(self) -> bool:
        return self.executor.is_executing
