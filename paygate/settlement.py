# EIP-3009 settlement payloads for x402 settlement routers
# https://eips.ethereum.org/EIPS/eip-3009

from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, Mapping, Optional
import base64
import binascii
import json
import secrets

from eth_abi import encode
from pydantic import ValidationError
from web3 import Web3

from .errors import ProtocolError
from .models import (
    ZERO_ADDRESS,
    HookType,
    PaymentRequirement,
    PaymentTerms,
    Service,
    SettlementReceipt,
    SignedAuthorization,
    Split,
    TransferAuthorization,
)


X402_VERSION = 1

PAYMENT_REQUIRED_HEADER = "PAYMENT-REQUIRED"
PAYMENT_HEADER = "X-PAYMENT"
PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"

USDC_DECIMALS = 6
COMMITMENT_DOMAIN = "X402/settle/v1"

EIP712_DOMAIN_TYPE = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

TRANSFER_WITH_AUTHORIZATION_TYPE = [
    {"name": "from", "type": "address"},
    {"name": "to", "type": "address"},
    {"name": "value", "type": "uint256"},
    {"name": "validAfter", "type": "uint256"},
    {"name": "validBefore", "type": "uint256"},
    {"name": "nonce", "type": "bytes32"},
]

SETTLEMENT_ROUTER_ABI = [
    {
        "name": "calculateCommitment",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "token", "type": "address"},
            {"name": "from", "type": "address"},
            {"name": "value", "type": "uint256"},
            {"name": "validAfter", "type": "uint256"},
            {"name": "validBefore", "type": "uint256"},
            {"name": "salt", "type": "bytes32"},
            {"name": "payTo", "type": "address"},
            {"name": "facilitatorFee", "type": "uint256"},
            {"name": "hook", "type": "address"},
            {"name": "hookData", "type": "bytes"},
        ],
        "outputs": [{"name": "", "type": "bytes32"}],
    },
]


def parse_units(amount: str, decimals: int = USDC_DECIMALS) -> int:
    """Convert a decimal token amount like '0.1' to atomic units."""
    try:
        scaled = Decimal(str(amount)) * (Decimal(10) ** decimals)
    except InvalidOperation as exc:
        raise ProtocolError(f"Invalid token amount: {amount!r}") from exc
    if scaled != scaled.to_integral_value() or scaled < 0:
        raise ProtocolError(f"Invalid token amount: {amount!r}")
    return int(scaled)


def format_units(value: int, decimals: int = USDC_DECIMALS) -> str:
    quantized = Decimal(value) / (Decimal(10) ** decimals)
    return format(quantized.normalize(), "f")


def checksum(address: str) -> str:
    try:
        return Web3.to_checksum_address(address)
    except (TypeError, ValueError) as exc:
        raise ProtocolError(f"Invalid address: {address!r}") from exc


def generate_salt() -> str:
    return "0x" + secrets.token_hex(32)


def encode_hook_data(service: Service, splits: Optional[Iterable[Split]] = None) -> str:
    """
    ABI-encode the hook configuration for a service.

    nft-mint and reward-points hooks take a single-address struct naming the
    contract they act on; transfer-split takes (recipient, bips) pairs, or no
    data at all for a plain transfer.
    """
    contracts = service.supporting_contracts or {}
    if service.hook_type == HookType.NFT_MINT:
        target = contracts.get("nftContract") or ZERO_ADDRESS
        return Web3.to_hex(encode(["(address)"], [(checksum(target),)]))
    if service.hook_type == HookType.REWARD_POINTS:
        target = contracts.get("rewardToken") or ZERO_ADDRESS
        return Web3.to_hex(encode(["(address)"], [(checksum(target),)]))

    split_rows = list(splits or [])
    if not split_rows:
        return "0x"
    if sum(split.bips for split in split_rows) > 10_000:
        raise ProtocolError("Split shares exceed 100%")
    rows = [(checksum(split.recipient), split.bips) for split in split_rows]
    return Web3.to_hex(encode(["(address,uint16)[]"], [rows]))


def build_terms(
    service: Service,
    requirement: PaymentRequirement,
    splits: Optional[Iterable[Split]] = None,
) -> PaymentTerms:
    """Merge the 402 requirement with the router and hook fields of a service."""
    defaults = service.defaults
    extra = requirement.extra or {}

    value = _atomic(requirement.max_amount_required, "maxAmountRequired")
    if "facilitatorFee" in extra:
        facilitator_fee = _atomic(extra["facilitatorFee"], "facilitatorFee")
    else:
        facilitator_fee = parse_units(defaults.facilitator_fee if defaults else "0")

    return PaymentTerms(
        service_id=service.id,
        network=requirement.network or service.network,
        chain_id=service.chain_id,
        token=checksum(requirement.asset or service.usdc_address),
        settlement_router=checksum(service.settlement_router),
        value=value,
        pay_to=checksum(requirement.pay_to),
        facilitator_fee=facilitator_fee,
        hook=checksum(service.hook_address),
        hook_data=encode_hook_data(service, splits),
        token_name=extra.get("name") or "USD Coin",
        token_version=extra.get("version") or "2",
        salt=extra.get("salt"),
    )


def calculate_commitment(
    terms: PaymentTerms,
    payer: str,
    valid_after: int,
    valid_before: int,
    salt: str,
) -> str:
    """
    Compute the settlement router commitment locally.

    The commitment is used as the EIP-3009 nonce, binding the signature to
    the recipient, fee and hook so the router cannot be pointed elsewhere.
    """
    hook_data_hash = Web3.keccak(hexstr=terms.hook_data)
    digest = Web3.solidity_keccak(
        [
            "string",
            "uint256",
            "address",
            "address",
            "address",
            "uint256",
            "uint256",
            "uint256",
            "bytes32",
            "address",
            "uint256",
            "address",
            "bytes32",
        ],
        [
            COMMITMENT_DOMAIN,
            terms.chain_id,
            terms.settlement_router,
            terms.token,
            checksum(payer),
            terms.value,
            valid_after,
            valid_before,
            salt,
            terms.pay_to,
            terms.facilitator_fee,
            terms.hook,
            hook_data_hash,
        ],
    )
    return Web3.to_hex(digest)


def build_typed_data(terms: PaymentTerms, authorization: TransferAuthorization) -> Dict[str, Any]:
    """EIP-712 TransferWithAuthorization message for eth_signTypedData_v4."""
    return {
        "types": {
            "EIP712Domain": EIP712_DOMAIN_TYPE,
            "TransferWithAuthorization": TRANSFER_WITH_AUTHORIZATION_TYPE,
        },
        "primaryType": "TransferWithAuthorization",
        "domain": {
            "name": terms.token_name,
            "version": terms.token_version,
            "chainId": terms.chain_id,
            "verifyingContract": terms.token,
        },
        "message": {
            "from": authorization.from_address,
            "to": authorization.to,
            "value": int(authorization.value),
            "validAfter": int(authorization.valid_after),
            "validBefore": int(authorization.valid_before),
            "nonce": authorization.nonce,
        },
    }


def parse_payment_required(headers: Mapping[str, str], body: bytes) -> PaymentRequirement:
    """
    Decode the payment requirement from a 402 response.

    The PAYMENT-REQUIRED header (base64 JSON) wins over the body. The first
    entry of the 'accepts' array is used.
    """
    header_value = None
    for key, value in headers.items():
        if key.lower() == PAYMENT_REQUIRED_HEADER.lower():
            header_value = value
            break

    if header_value:
        data = _decode_base64_json(header_value, PAYMENT_REQUIRED_HEADER)
    else:
        try:
            data = json.loads(body or b"{}")
        except ValueError as exc:
            raise ProtocolError("Payment required response is not valid JSON") from exc

    if not isinstance(data, dict):
        raise ProtocolError("Payment required response must be an object")

    accepts = data.get("accepts")
    if not accepts or not isinstance(accepts, list):
        raise ProtocolError("Payment required response has no 'accepts' entries")
    first = accepts[0]
    if not isinstance(first, dict):
        raise ProtocolError("Invalid 'accepts' entry in payment required response")

    try:
        return PaymentRequirement.model_validate(first)
    except ValidationError as exc:
        missing = sorted({str(err["loc"][0]) for err in exc.errors() if err["loc"]})
        raise ProtocolError(
            f"Payment required response is missing or has invalid fields: {', '.join(missing)}"
        ) from exc


def encode_payment_header(signed: SignedAuthorization, network: str) -> str:
    payload = {
        "x402Version": X402_VERSION,
        "scheme": "exact",
        "network": network,
        "payload": {
            "signature": signed.signature,
            "authorization": signed.authorization.model_dump(by_alias=True),
            "salt": signed.salt,
            "payTo": signed.pay_to,
            "facilitatorFee": signed.facilitator_fee,
            "hook": signed.hook,
            "hookData": signed.hook_data,
        },
    }
    encoded = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return base64.b64encode(encoded).decode("ascii")


def decode_payment_header(header_value: str) -> Dict[str, Any]:
    return _decode_base64_json(header_value, PAYMENT_HEADER)


def parse_settlement(headers: Mapping[str, str], body: bytes) -> SettlementReceipt:
    """Read the settlement receipt from X-PAYMENT-RESPONSE, falling back to the body."""
    data: Any = None
    for key, value in headers.items():
        if key.lower() == PAYMENT_RESPONSE_HEADER.lower():
            data = _decode_base64_json(value, PAYMENT_RESPONSE_HEADER)
            break
    if data is None and body:
        try:
            data = json.loads(body)
        except ValueError:
            data = None
    if not isinstance(data, dict):
        return SettlementReceipt()
    settlement = data.get("settlement") if isinstance(data.get("settlement"), dict) else data
    try:
        return SettlementReceipt.model_validate(settlement)
    except ValidationError:
        return SettlementReceipt()


def _decode_base64_json(value: str, header: str) -> Any:
    try:
        return json.loads(base64.b64decode(value))
    except (binascii.Error, ValueError) as exc:
        raise ProtocolError(f"Failed to decode {header} header: {exc}") from exc


def _atomic(value: Any, field: str) -> int:
    text = str(value).strip()
    if not text.isdigit():
        raise ProtocolError(f"'{field}' must be an integer amount in atomic units")
    return int(text)
