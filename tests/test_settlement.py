import base64
import json

import pytest
from eth_abi import decode
from web3 import Web3

from paygate.errors import ProtocolError
from paygate.models import PaymentRequirement, Service, Split
from paygate.settlement import (
    PAYMENT_REQUIRED_HEADER,
    PAYMENT_RESPONSE_HEADER,
    build_terms,
    calculate_commitment,
    encode_hook_data,
    format_units,
    parse_payment_required,
    parse_settlement,
    parse_units,
)

from conftest import PAY_TO, USDC, service_entry


def _challenge(**fields):
    accepts = {
        "scheme": "exact",
        "network": "cronos-testnet",
        "maxAmountRequired": "100000",
        "asset": USDC,
        "payTo": PAY_TO,
    }
    accepts.update(fields)
    return {"x402Version": 1, "accepts": [accepts]}


def test_units_round_trip_decimal_amounts():
    assert parse_units("0.1") == 100_000
    assert parse_units("1") == 1_000_000
    assert format_units(100_000) == "0.1"
    assert format_units(2_500_000) == "2.5"


@pytest.mark.parametrize("amount", ["abc", "0.0000001", "-1"])
def test_parse_units_rejects_unusable_amounts(amount):
    with pytest.raises(ProtocolError):
        parse_units(amount)


def test_nft_mint_hook_data_names_the_nft_contract():
    service = Service.model_validate(service_entry())
    (encoded,) = decode(["(address)"], Web3.to_bytes(hexstr=encode_hook_data(service)))
    assert encoded[0].lower() == "0x" + "55" * 20


def test_reward_points_without_contract_uses_zero_address():
    service = Service.model_validate(
        service_entry(hookType="reward-points", supportingContracts=None)
    )
    (encoded,) = decode(["(address)"], Web3.to_bytes(hexstr=encode_hook_data(service)))
    assert int(encoded[0], 16) == 0


def test_transfer_split_hook_data():
    service = Service.model_validate(service_entry(hookType="transfer-split"))
    assert encode_hook_data(service) == "0x"

    splits = [Split(recipient="0x" + "77" * 20, bips=7000), Split(recipient="0x" + "88" * 20, bips=3000)]
    (rows,) = decode(["(address,uint16)[]"], Web3.to_bytes(hexstr=encode_hook_data(service, splits)))
    assert [(address.lower(), bips) for address, bips in rows] == [
        ("0x" + "77" * 20, 7000),
        ("0x" + "88" * 20, 3000),
    ]


def test_transfer_split_rejects_more_than_whole():
    service = Service.model_validate(service_entry(hookType="transfer-split"))
    splits = [Split(recipient="0x" + "77" * 20, bips=6000), Split(recipient="0x" + "88" * 20, bips=6000)]
    with pytest.raises(ProtocolError, match="exceed"):
        encode_hook_data(service, splits)


def test_payment_required_reads_body():
    requirement = parse_payment_required({}, json.dumps(_challenge()).encode())
    assert requirement.max_amount_required == "100000"
    assert requirement.pay_to == PAY_TO


def test_payment_required_header_wins_over_body():
    header = base64.b64encode(json.dumps(_challenge(maxAmountRequired="5")).encode()).decode()
    requirement = parse_payment_required(
        {PAYMENT_REQUIRED_HEADER: header}, json.dumps(_challenge()).encode()
    )
    assert requirement.max_amount_required == "5"


def test_payment_required_numeric_amount_is_accepted():
    requirement = parse_payment_required({}, json.dumps(_challenge(maxAmountRequired=100000)).encode())
    assert requirement.max_amount_required == "100000"


@pytest.mark.parametrize(
    "body, message",
    [
        (b"not json", "not valid JSON"),
        (json.dumps({"error": "nope"}).encode(), "accepts"),
        (json.dumps({"accepts": [{"scheme": "exact"}]}).encode(), "maxAmountRequired"),
    ],
)
def test_payment_required_errors(body, message):
    with pytest.raises(ProtocolError, match=message):
        parse_payment_required({}, body)


def test_build_terms_prefers_requirement_fee_and_falls_back_to_defaults():
    service = Service.model_validate(service_entry())
    with_fee = PaymentRequirement.model_validate(_challenge(extra={"facilitatorFee": "42"})["accepts"][0])
    assert build_terms(service, with_fee).facilitator_fee == 42

    without_fee = PaymentRequirement.model_validate(_challenge(asset="")["accepts"][0])
    terms = build_terms(service, without_fee)
    assert terms.facilitator_fee == 10_000
    assert terms.token == Web3.to_checksum_address(USDC)
    assert terms.value == 100_000


def test_commitment_binds_the_recipient():
    service = Service.model_validate(service_entry())
    requirement = PaymentRequirement.model_validate(_challenge()["accepts"][0])
    terms = build_terms(service, requirement)
    payer = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
    salt = "0x" + "01" * 32

    first = calculate_commitment(terms, payer, 0, 100, salt)
    assert first == calculate_commitment(terms, payer, 0, 100, salt)
    assert len(Web3.to_bytes(hexstr=first)) == 32

    redirected = terms.model_copy(update={"pay_to": Web3.to_checksum_address("0x" + "99" * 20)})
    assert calculate_commitment(redirected, payer, 0, 100, salt) != first


def test_settlement_header_then_body():
    encoded = base64.b64encode(json.dumps({"success": True, "transaction": "0x01"}).encode()).decode()
    assert parse_settlement({PAYMENT_RESPONSE_HEADER: encoded}, b"").transaction == "0x01"

    body = json.dumps({"settlement": {"success": False, "errorReason": "expired"}}).encode()
    receipt = parse_settlement({}, body)
    assert receipt.success is False
    assert receipt.model_extra["errorReason"] == "expired"

    assert parse_settlement({}, b"").success is True
