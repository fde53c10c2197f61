from enum import Enum
from typing import Any, Dict, List, Optional
import time

from pydantic import BaseModel, ConfigDict, Field


ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class HookType(str, Enum):
    NFT_MINT = "nft-mint"
    REWARD_POINTS = "reward-points"
    TRANSFER_SPLIT = "transfer-split"


class SigningMode(str, Enum):
    CONNECTED_WALLET = "connected-wallet"
    DEVELOPER_WALLET = "developer-wallet"


class EventType(str, Enum):
    PROGRESS = "progress"
    PAYMENT_REQUIRED = "payment-required"
    SIGNING = "signing"
    SETTLED = "settled"
    ERROR = "error"


TERMINAL_EVENTS = {EventType.SETTLED, EventType.ERROR}


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True, coerce_numbers_to_str=True)


class ServiceDefaults(WireModel):
    payment_amount: str = Field(default="0.1", alias="paymentAmount")
    facilitator_fee: str = Field(default="0", alias="facilitatorFee")
    pay_to: str = Field(default=ZERO_ADDRESS, alias="payTo")


class Service(WireModel):
    model_config = ConfigDict(
        populate_by_name=True, frozen=True, extra="allow", coerce_numbers_to_str=True
    )

    id: str
    title: str
    description: Optional[str] = None
    hook_type: HookType = Field(alias="hookType")
    hook_address: str = Field(alias="hookAddress")
    network: str
    settlement_router: str = Field(alias="settlementRouter")
    usdc_address: str = Field(alias="usdcAddress")
    chain_id: int = Field(alias="chainId")
    supporting_contracts: Optional[Dict[str, str]] = Field(
        default=None, alias="supportingContracts"
    )
    defaults: Optional[ServiceDefaults] = None
    resource: Optional[str] = None

    def summary(self) -> Dict[str, str]:
        return {"id": self.id, "title": self.title, "hookType": self.hook_type.value}


class Split(WireModel):
    recipient: str
    bips: int = Field(ge=1, le=10_000)


class ProgressEvent(WireModel):
    type: EventType
    message: str
    timestamp: int = Field(default_factory=lambda: int(time.time() * 1000))
    payload: Optional[Dict[str, Any]] = None

    @property
    def terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS


class DiscoverResponse(BaseModel):
    # Entries come from the resource server and are handed through unvalidated.
    services: List[Any] = Field(default_factory=list)
    server_url: str = Field(default="", alias="serverUrl")
    configured: bool = False
    error: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class WalletStatusResponse(BaseModel):
    configured: bool
    address: Optional[str] = None
    error: Optional[str] = None


class ExecuteRequest(BaseModel):
    service_id: str = Field(default="", alias="serviceId")
    query: str = ""
    splits: Optional[List[Split]] = None

    model_config = ConfigDict(populate_by_name=True)


class PaymentRequirement(WireModel):
    model_config = ConfigDict(
        populate_by_name=True, frozen=True, extra="allow", coerce_numbers_to_str=True
    )

    scheme: str = "exact"
    network: str = ""
    max_amount_required: str = Field(alias="maxAmountRequired")
    asset: str = ""
    pay_to: str = Field(alias="payTo")
    resource: Optional[str] = None
    description: Optional[str] = None
    max_timeout_seconds: Optional[int] = Field(default=None, alias="maxTimeoutSeconds")
    extra: Dict[str, Any] = Field(default_factory=dict)


class PaymentTerms(WireModel):
    """Requirement merged with the service's router and hook fields."""

    service_id: str
    network: str
    chain_id: int
    token: str
    settlement_router: str
    value: int
    pay_to: str
    facilitator_fee: int
    hook: str
    hook_data: str
    token_name: str = "USD Coin"
    token_version: str = "2"
    salt: Optional[str] = None


class TransferAuthorization(WireModel):
    from_address: str = Field(alias="from")
    to: str
    value: str
    valid_after: str = Field(alias="validAfter")
    valid_before: str = Field(alias="validBefore")
    nonce: str


class SignedAuthorization(WireModel):
    authorization: TransferAuthorization
    signature: str
    salt: str
    pay_to: str = Field(alias="payTo")
    facilitator_fee: str = Field(alias="facilitatorFee")
    hook: str
    hook_data: str = Field(alias="hookData")


class SettlementReceipt(WireModel):
    model_config = ConfigDict(
        populate_by_name=True, frozen=True, extra="allow", coerce_numbers_to_str=True
    )

    success: bool = True
    transaction: Optional[str] = None
    network: Optional[str] = None
    payer: Optional[str] = None
    block_number: Optional[int] = Field(default=None, alias="blockNumber")
    explorer_url: Optional[str] = Field(default=None, alias="explorerUrl")


class AppInfo(BaseModel):
    resource_configured: bool
    developer_wallet_configured: bool
    chain_reads: bool
