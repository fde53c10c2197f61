from contextlib import asynccontextmanager
from functools import lru_cache
from typing import AsyncIterator, Optional
import logging

import httpx
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from .catalog import ServiceCatalog
from .chain import ChainReader, build_chain_reader
from .config import Settings, get_settings, settings
from .executor import execute_with_developer_wallet, validation_message
from .logging import configure_logging
from .models import AppInfo, DiscoverResponse, ExecuteRequest, WalletStatusResponse
from .stream import CancellationToken, encode_frame, error_event
from .wallet import wallet_status

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level)
    async with httpx.AsyncClient(timeout=settings.http_timeout_seconds) as client:
        app.state.http_client = client
        logger.info("Started with %r", settings)
        yield


app = FastAPI(title=settings.app_name, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_http_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.http_client


@lru_cache(maxsize=1)
def _chain_reader(rpc_url: str, timeout: float) -> Optional[ChainReader]:
    return build_chain_reader(rpc_url, timeout)


def get_chain_reader(config: Settings = Depends(get_settings)) -> Optional[ChainReader]:
    return _chain_reader(config.chain_rpc_url, config.http_timeout_seconds)


def require_api_key(
    x_api_key: str = Header(default=""), config: Settings = Depends(get_settings)
) -> None:
    if config.api_key and x_api_key != config.api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/info", response_model=AppInfo)
async def info(config: Settings = Depends(get_settings)) -> AppInfo:
    return AppInfo(
        resource_configured=config.resource_configured,
        developer_wallet_configured=config.developer_wallet_configured,
        chain_reads=bool(config.chain_rpc_url),
    )


@app.get("/discover", response_model=DiscoverResponse, response_model_by_alias=True)
async def discover(
    config: Settings = Depends(get_settings),
    client: httpx.AsyncClient = Depends(get_http_client),
) -> DiscoverResponse:
    return await ServiceCatalog(config, client).discover()


@app.get(
    "/wallet-status",
    response_model=WalletStatusResponse,
    response_model_exclude_none=True,
)
async def developer_wallet_status(config: Settings = Depends(get_settings)) -> WalletStatusResponse:
    return wallet_status(config)


@app.post("/execute")
async def execute(
    request: Request,
    _: None = Depends(require_api_key),
    config: Settings = Depends(get_settings),
    client: httpx.AsyncClient = Depends(get_http_client),
    chain: Optional[ChainReader] = Depends(get_chain_reader),
) -> StreamingResponse:
    raw = await request.body()
    token = CancellationToken()

    async def frames() -> AsyncIterator[bytes]:
        try:
            try:
                payload = ExecuteRequest.model_validate_json(raw or b"{}")
            except ValidationError as exc:
                yield encode_frame(error_event(f"Invalid execute request: {validation_message(exc)}"))
                return
            async for event in execute_with_developer_wallet(
                config, client, payload, token, chain=chain
            ):
                yield encode_frame(event)
        finally:
            # client went away before the run finished
            token.cancel()

    return StreamingResponse(frames(), media_type="application/x-ndjson")
