"""
Payment executor - runs a payment cycle with whichever signer the session's
signing mode selects.

Contains:
- LocalExecution: the protocol runs in this process with a local signer
  (the connected wallet path)
- RemoteExecution: the protocol runs on the hosting service with the
  developer wallet; events arrive over one NDJSON stream
- execute_with_developer_wallet: the hosting service's half of that path
- PaymentExecutor: per-session bookkeeping, one execution at a time
"""

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional, Tuple, Union
import logging
import time

import httpx
from pydantic import ValidationError

from .catalog import ServiceCatalog, find_service
from .chain import ChainReader
from .config import Settings
from .errors import ConfigurationError
from .models import ExecuteRequest, ProgressEvent, Service, SigningMode, Split
from .protocol import PaymentProtocol
from .signing_mode import SigningModeState
from .stream import CancellationToken, ProgressStream, decode_frame, error_event
from .wallet import WalletSigner, get_developer_wallet

logger = logging.getLogger(__name__)


ServiceInput = Union[Service, Mapping[str, Any]]


class ExecutionStrategy:
    mode: SigningMode

    def run(
        self,
        service: Service,
        token: CancellationToken,
        query: str = "",
        splits: Optional[Iterable[Split]] = None,
    ) -> AsyncIterator[ProgressEvent]:
        raise NotImplementedError


class LocalExecution(ExecutionStrategy):
    def __init__(self, protocol: PaymentProtocol, signer: WalletSigner) -> None:
        self.protocol = protocol
        self.signer = signer
        self.mode = signer.mode

    def run(self, service, token, query="", splits=None):
        return self.protocol.run(service, self.signer, token, query=query, splits=splits)


class RemoteExecution(ExecutionStrategy):
    mode = SigningMode.DEVELOPER_WALLET

    def __init__(
        self,
        api_url: str,
        client: httpx.AsyncClient,
        timeout: float = 30.0,
        api_key: str = "",
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.client = client
        self.timeout = timeout
        self.api_key = api_key

    async def run(self, service, token, query="", splits=None):
        body: Dict[str, Any] = {"serviceId": service.id, "query": query or service.title}
        if splits:
            body["splits"] = [split.model_dump() for split in splits]
        headers = {"X-API-Key": self.api_key} if self.api_key else {}

        try:
            async with self.client.stream(
                "POST",
                f"{self.api_url}/execute",
                json=body,
                headers=headers,
                timeout=httpx.Timeout(self.timeout, read=self.timeout * 2),
            ) as response:
                if not response.is_success:
                    yield error_event(
                        f"Execution request failed: {response.status_code} {response.reason_phrase}"
                    )
                    return
                async for line in response.aiter_lines():
                    token.raise_if_cancelled()
                    event = decode_frame(line)
                    if event is None:
                        continue
                    # timestamps are taken on arrival, as for locally driven runs
                    yield event.model_copy(update={"timestamp": int(time.time() * 1000)})
                    if event.terminal:
                        return
        except httpx.HTTPError as exc:
            logger.warning("Execution stream from %s failed: %s", self.api_url, exc)
            yield error_event(
                f"Lost connection to execution service: {str(exc) or type(exc).__name__}"
            )
            return
        yield error_event("Execution stream ended before settlement")


async def execute_with_developer_wallet(
    settings: Settings,
    client: httpx.AsyncClient,
    request: ExecuteRequest,
    token: CancellationToken,
    chain: Optional[ChainReader] = None,
) -> AsyncIterator[ProgressEvent]:
    """Server side of the developer wallet path: look the service up and pay for it."""
    if not request.service_id:
        yield error_event("serviceId is required")
        return
    if not request.query:
        yield error_event("query is required")
        return

    try:
        wallet = get_developer_wallet(settings)
    except ConfigurationError as exc:
        yield error_event(str(exc))
        return
    if wallet is None:
        yield error_event("Developer wallet not configured (DEVELOPER_PRIVATE_KEY)")
        return
    if not settings.resource_configured:
        yield error_event("Server URL not configured (RESOURCE_SERVICE_URL)")
        return

    discovered = await ServiceCatalog(settings, client).discover()
    if discovered.error:
        yield error_event(discovered.error)
        return
    entry = find_service(discovered.services, request.service_id)
    if entry is None:
        yield error_event(f"Service not found: {request.service_id}")
        return
    try:
        service = Service.model_validate(entry)
    except ValidationError as exc:
        yield error_event(f"Service {request.service_id} is malformed: {validation_message(exc)}")
        return

    protocol = PaymentProtocol(settings, client, chain)
    async for event in protocol.run(
        service, wallet.signer, token, query=request.query, splits=request.splits
    ):
        yield event


@dataclass
class ExecutionSession:
    service_id: Optional[str] = None
    mode: Optional[SigningMode] = None
    is_executing: bool = False
    _events: List[ProgressEvent] = field(default_factory=list, repr=False)

    @property
    def events(self) -> Tuple[ProgressEvent, ...]:
        return tuple(self._events)

    def append(self, event: ProgressEvent) -> None:
        self._events.append(event)


class PaymentExecutor:
    """
    Runs payment cycles for one session.

    A second execute() while one is in flight is rejected with a single
    error event and leaves the running execution and its events untouched.
    """

    def __init__(self, strategies: Mapping[SigningMode, ExecutionStrategy]) -> None:
        self.strategies = dict(strategies)
        self.session = ExecutionSession()
        self._token: Optional[CancellationToken] = None

    @property
    def is_executing(self) -> bool:
        return self.session.is_executing

    def execute(
        self,
        service: ServiceInput,
        state: SigningModeState,
        query: str = "",
        splits: Optional[Iterable[Split]] = None,
    ) -> ProgressStream:
        if self.session.is_executing:
            return ProgressStream.of(
                error_event("An execution is already in progress", payload={"reason": "busy"})
            )
        if state.is_loading:
            return ProgressStream.of(error_event("Signing mode is still being resolved"))
        strategy = self.strategies.get(state.mode)
        if strategy is None:
            return ProgressStream.of(error_event(f"No signer available for {state.mode.value}"))

        service_id = service.id if isinstance(service, Service) else service.get("id")
        session = ExecutionSession(service_id=service_id, mode=state.mode, is_executing=True)
        self.session = session
        split_rows = list(splits or [])

        async def produce(token: CancellationToken) -> AsyncIterator[ProgressEvent]:
            try:
                typed = service if isinstance(service, Service) else Service.model_validate(service)
            except ValidationError as exc:
                yield error_event(f"Service {service_id} is malformed: {validation_message(exc)}")
                return
            async for event in strategy.run(typed, token, query=query, splits=split_rows):
                yield event

        def closed() -> None:
            session.is_executing = False
            if self._token is token:
                self._token = None

        # only the token is kept here, so a stream its reader drops can be collected
        token = CancellationToken()
        stream = ProgressStream(produce, token=token, on_event=session.append, on_close=closed)
        self._token = token
        logger.info("Executing %s with %s", service_id, state.mode.value)
        return stream

    def cancel(self) -> None:
        if self._token is not None:
            self._token.cancel()

    def reset(self) -> None:
        self.cancel()
        self.session = ExecutionSession()


def validation_message(exc: ValidationError) -> str:
    """First validation problem as `location: message`."""
    errors = exc.errors()
    if not errors:
        return str(exc)
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
