"""
Pytest configuration and fixtures for paygate tests.

The resource server is an in-process fake behind httpx.MockTransport: it
answers discovery, challenges unpaid calls with a 402 and settles calls
that carry an X-PAYMENT header.
"""
import asyncio
import base64
import json
from typing import Any, Dict, List, Optional

import httpx
import pytest

from paygate.config import Settings
from paygate.settlement import PAYMENT_HEADER, PAYMENT_RESPONSE_HEADER, decode_payment_header
from paygate.wallet import UserRejectedRequest


RESOURCE_URL = "http://resource.test"
API_URL = "http://paygate.test"

# well-known local development account, holds no real funds
DEVELOPER_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
DEVELOPER_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"

CONNECTED_ADDRESS = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
PAY_TO = "0x" + "66" * 20
USDC = "0x" + "44" * 20


def service_entry(**overrides: Any) -> Dict[str, Any]:
    entry = {
        "id": "svc1",
        "title": "NFT Mint",
        "description": "Mint a commemorative NFT",
        "hookType": "nft-mint",
        "hookAddress": "0x" + "22" * 20,
        "network": "cronos-testnet",
        "settlementRouter": "0x" + "33" * 20,
        "usdcAddress": USDC,
        "chainId": 338,
        "supportingContracts": {"nftContract": "0x" + "55" * 20},
        "defaults": {"paymentAmount": "0.1", "facilitatorFee": "0.01", "payTo": PAY_TO},
    }
    entry.update(overrides)
    return entry


class ResourceServer:
    """Fake x402 resource server."""

    def __init__(self, services: Optional[List[Dict[str, Any]]] = None) -> None:
        self.services = services if services is not None else [service_entry()]
        self.requests: List[httpx.Request] = []
        self.payments: List[Dict[str, Any]] = []
        self.discovery_status = 200
        self.free = False
        self.challenge: Optional[Dict[str, Any]] = None
        self.settlement: Dict[str, Any] = {
            "success": True,
            "transaction": "0x" + "ab" * 32,
            "network": "cronos-testnet",
            "blockNumber": 123,
        }

    @property
    def paid_calls(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == "POST"]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.method == "GET" and path == "/api/x402/services":
            if self.discovery_status != 200:
                return httpx.Response(self.discovery_status, json={"error": "boom"})
            return httpx.Response(200, json={"services": self.services})

        if request.method == "POST" and path.startswith("/api/x402/services/"):
            if self.free:
                return httpx.Response(200, json={"result": "free sample"})
            header = request.headers.get(PAYMENT_HEADER)
            if not header:
                return httpx.Response(402, json=self.challenge or self.default_challenge(path))
            payment = decode_payment_header(header)
            self.payments.append(payment)
            receipt = dict(self.settlement)
            receipt.setdefault("payer", payment["payload"]["authorization"]["from"])
            encoded = base64.b64encode(json.dumps(receipt).encode()).decode()
            return httpx.Response(
                200,
                json={"result": "minted", "query": json.loads(request.content)["query"]},
                headers={PAYMENT_RESPONSE_HEADER: encoded},
            )
        return httpx.Response(404, json={"error": "not found"})

    def default_challenge(self, path: str) -> Dict[str, Any]:
        return {
            "x402Version": 1,
            "error": "payment required",
            "accepts": [
                {
                    "scheme": "exact",
                    "network": "cronos-testnet",
                    "maxAmountRequired": "100000",
                    "asset": USDC,
                    "payTo": PAY_TO,
                    "resource": f"{RESOURCE_URL}{path}",
                    "maxTimeoutSeconds": 300,
                    "extra": {"facilitatorFee": "10000"},
                }
            ],
        }


class FakeWallet:
    """Connected wallet double; records every signing request."""

    def __init__(self, address: Optional[str] = CONNECTED_ADDRESS, behavior: str = "sign"):
        self.address = address
        self.behavior = behavior
        self.sign_calls: List[Dict[str, Any]] = []
        self.started = asyncio.Event()
        self.interrupted = False

    async def sign_typed_data(self, address: str, typed_data: Dict[str, Any]) -> str:
        self.sign_calls.append(typed_data)
        self.started.set()
        if self.behavior == "reject":
            raise UserRejectedRequest("User rejected the request")
        if self.behavior == "hang":
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                self.interrupted = True
                raise
        return "0x" + "cd" * 65


@pytest.fixture
def make_settings():
    def factory(**overrides: Any) -> Settings:
        values: Dict[str, Any] = dict(
            resource_service_url=RESOURCE_URL,
            developer_private_key="",
            api_url=API_URL,
            chain_rpc_url="",
            explorer_tx_url="https://explorer.test/tx/",
            http_timeout_seconds=5.0,
            signing_timeout_seconds=0,
            authorization_ttl_seconds=3600,
            api_key="",
        )
        values.update(overrides)
        return Settings(**values)

    return factory


@pytest.fixture
def resource_server() -> ResourceServer:
    return ResourceServer()


@pytest.fixture
async def client(resource_server):
    async with httpx.AsyncClient(transport=httpx.MockTransport(resource_server.handler)) as c:
        yield c


@pytest.fixture
def service() -> Dict[str, Any]:
    return service_entry()
