"""
Payment protocol - drives one request → 402 → sign → resubmit → settle cycle.

The driver is an async generator of progress events. It never raises to its
consumer: every failure ends the run with exactly one ``error`` event, and a
cancelled run simply stops without emitting anything further.
"""

from enum import Enum
from typing import Any, AsyncIterator, Dict, Iterable, Mapping, Optional
import logging
import time

import httpx

from .chain import ChainReader
from .config import Settings
from .errors import (
    ConfigurationError,
    ExecutionCancelled,
    NetworkError,
    PaygateError,
    ProtocolError,
    SigningError,
)
from .models import (
    EventType,
    PaymentTerms,
    ProgressEvent,
    Service,
    SettlementReceipt,
    SigningMode,
    Split,
    TransferAuthorization,
)
from .settlement import (
    PAYMENT_HEADER,
    build_terms,
    calculate_commitment,
    encode_payment_header,
    format_units,
    generate_salt,
    parse_payment_required,
    parse_settlement,
)
from .stream import CancellationToken, error_event
from .wallet import WalletSigner

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    PAYMENT_REQUIRED = "payment-required"
    SIGNING = "signing"
    RESUBMITTING = "resubmitting"
    SETTLED = "settled"
    ERRORED = "errored"


class ProtocolRun:
    """Phase bookkeeping for one execution."""

    def __init__(self, service_id: str) -> None:
        self.service_id = service_id
        self.phase = Phase.IDLE
        self.history = [Phase.IDLE]

    def enter(self, phase: Phase) -> None:
        logger.debug("Execution %s: %s -> %s", self.service_id, self.phase.value, phase.value)
        self.phase = phase
        self.history.append(phase)


class PaymentProtocol:
    def __init__(
        self,
        settings: Settings,
        client: httpx.AsyncClient,
        chain: Optional[ChainReader] = None,
    ) -> None:
        self.settings = settings
        self.client = client
        self.chain = chain
        self.last_run: Optional[ProtocolRun] = None

    def resource_url(self, service: Service) -> str:
        resource = (service.resource or "").strip()
        if resource.startswith(("http://", "https://")):
            return resource
        if not self.settings.resource_configured:
            raise ConfigurationError("Server URL not configured (RESOURCE_SERVICE_URL)")
        base = self.settings.resource_base_url
        if resource:
            return f"{base}/{resource.lstrip('/')}"
        return f"{base}/api/x402/services/{service.id}"

    async def run(
        self,
        service: Service,
        signer: WalletSigner,
        token: CancellationToken,
        query: str = "",
        splits: Optional[Iterable[Split]] = None,
    ) -> AsyncIterator[ProgressEvent]:
        run = ProtocolRun(service.id)
        self.last_run = run
        try:
            async for event in self._drive(run, service, signer, token, query, splits):
                yield event
        except ExecutionCancelled:
            logger.info("Execution of %s cancelled during %s", service.id, run.phase.value)
        except PaygateError as exc:
            failed_in = run.phase
            run.enter(Phase.ERRORED)
            logger.warning("Execution of %s failed during %s: %s", service.id, failed_in.value, exc)
            yield error_event(str(exc), payload=_error_payload(service, failed_in, exc))
        except Exception as exc:
            failed_in = run.phase
            run.enter(Phase.ERRORED)
            logger.exception("Unexpected failure executing %s", service.id)
            yield error_event(
                f"Unexpected error during {failed_in.value}: {type(exc).__name__}",
                payload=_error_payload(service, failed_in, exc),
            )

    async def _drive(
        self,
        run: ProtocolRun,
        service: Service,
        signer: WalletSigner,
        token: CancellationToken,
        query: str,
        splits: Optional[Iterable[Split]],
    ) -> AsyncIterator[ProgressEvent]:
        splits = list(splits or [])
        url = self.resource_url(service)
        body = {"query": query or service.title}

        token.raise_if_cancelled()
        run.enter(Phase.REQUESTING)
        yield _event(
            EventType.PROGRESS,
            f"Requesting {service.title}...",
            phase=Phase.REQUESTING,
            service=service.summary(),
            resource=url,
        )
        response = await self._post(url, body)
        token.raise_if_cancelled()

        if response.is_success:
            run.enter(Phase.SETTLED)
            yield _event(
                EventType.SETTLED,
                f"{service.title} served without payment",
                phase=Phase.SETTLED,
                service=service.summary(),
                free=True,
                result=_json_or_text(response),
            )
            return
        if response.status_code != 402:
            raise ProtocolError(
                f"Resource server returned {response.status_code} {response.reason_phrase}"
            )

        run.enter(Phase.PAYMENT_REQUIRED)
        requirement = parse_payment_required(response.headers, response.content)
        terms = build_terms(service, requirement, splits)
        amount = f"{format_units(terms.value)} USDC"
        yield _event(
            EventType.PAYMENT_REQUIRED,
            f"Payment required: {amount} to {terms.pay_to}",
            phase=Phase.PAYMENT_REQUIRED,
            service=service.summary(),
            amount=amount,
            value=str(terms.value),
            asset=terms.token,
            payTo=terms.pay_to,
            network=terms.network,
            facilitatorFee=str(terms.facilitator_fee),
            splits=[{"recipient": s.recipient, "percentage": f"{s.bips / 100:g}%"} for s in splits]
            or None,
        )
        token.raise_if_cancelled()

        run.enter(Phase.SIGNING)
        payer = await signer.resolve_address()
        await signer.prepare(terms)
        terms = await self._with_token_domain(terms)
        await self._check_funds(terms, payer)
        # the signer echoes the salt from the terms, so fix it before authorizing
        terms = terms.model_copy(update={"salt": terms.salt or generate_salt()})
        authorization = await self._authorize(terms, payer)
        yield _event(
            EventType.SIGNING,
            "Signing payment authorization..."
            if signer.mode == SigningMode.DEVELOPER_WALLET
            else "Signing payment authorization... (check your wallet)",
            phase=Phase.SIGNING,
            mode=signer.mode.value,
            payer=payer,
        )
        token.raise_if_cancelled()
        signed = await signer.sign(terms, authorization)
        token.raise_if_cancelled()

        run.enter(Phase.RESUBMITTING)
        payment_header = encode_payment_header(signed, terms.network)
        response = await self._post(url, body, headers={PAYMENT_HEADER: payment_header})
        if not response.is_success:
            raise ProtocolError(
                f"Settlement rejected: {response.status_code} {response.reason_phrase}"
                f"{_reason(response)}"
            )

        receipt = parse_settlement(response.headers, response.content)
        if not receipt.success:
            raise ProtocolError(f"Settlement failed{_receipt_reason(receipt)}")
        run.enter(Phase.SETTLED)
        message = (
            f"Split payment confirmed to {len(splits)} recipients!"
            if splits
            else "Payment settled"
        )
        yield _event(
            EventType.SETTLED,
            message,
            phase=Phase.SETTLED,
            service=service.summary(),
            transaction=self._transaction(receipt, payer, terms, amount),
            result=_json_or_text(response),
        )

    async def _post(
        self, url: str, body: Dict[str, Any], headers: Optional[Mapping[str, str]] = None
    ) -> httpx.Response:
        try:
            return await self.client.post(
                url,
                json=body,
                headers=dict(headers or {}),
                timeout=self.settings.http_timeout_seconds,
            )
        except httpx.TimeoutException as exc:
            raise NetworkError(f"Resource server timed out ({url})") from exc
        except httpx.HTTPError as exc:
            raise NetworkError(
                f"Could not reach resource server: {str(exc) or type(exc).__name__}"
            ) from exc

    async def _with_token_domain(self, terms: PaymentTerms) -> PaymentTerms:
        if self.chain is None:
            return terms
        name, version = await self.chain.token_domain(
            terms.token, (terms.token_name, terms.token_version)
        )
        return terms.model_copy(update={"token_name": name, "token_version": version})

    async def _check_funds(self, terms: PaymentTerms, payer: str) -> None:
        if self.chain is None:
            return
        balance = await self.chain.token_balance(terms.token, payer)
        if balance < terms.value:
            raise SigningError(
                f"Insufficient USDC balance. Required: {format_units(terms.value)} USDC, "
                f"Available: {format_units(balance)} USDC",
                reason=SigningError.INSUFFICIENT_FUNDS,
            )

    async def _authorize(self, terms: PaymentTerms, payer: str) -> TransferAuthorization:
        salt = terms.salt
        valid_after = 0
        valid_before = int(time.time()) + self.settings.authorization_ttl_seconds
        if self.chain is not None:
            nonce = await self.chain.commitment(terms, payer, valid_after, valid_before, salt)
        else:
            nonce = calculate_commitment(terms, payer, valid_after, valid_before, salt)
        return TransferAuthorization(
            from_address=payer,
            to=terms.settlement_router,
            value=str(terms.value),
            valid_after=str(valid_after),
            valid_before=str(valid_before),
            nonce=nonce,
        )

    def _transaction(
        self, receipt: SettlementReceipt, payer: str, terms: PaymentTerms, amount: str
    ) -> Dict[str, Any]:
        tx_hash = receipt.transaction
        explorer_url = receipt.explorer_url or (
            self.settings.explorer_link(tx_hash) if tx_hash else None
        )
        return {
            "hash": tx_hash,
            "blockNumber": receipt.block_number,
            "network": receipt.network or terms.network,
            "from": receipt.payer or payer,
            "payTo": terms.pay_to,
            "amount": amount,
            "explorerUrl": explorer_url,
        }


def _event(type_: EventType, message: str, phase: Phase, **payload: Any) -> ProgressEvent:
    data = {"phase": phase.value}
    data.update({key: value for key, value in payload.items() if value is not None})
    return ProgressEvent(type=type_, message=message, payload=data)


def _error_payload(service: Service, phase: Phase, exc: Exception) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"phase": phase.value, "service": service.summary()}
    if isinstance(exc, SigningError):
        payload["reason"] = exc.reason
    return payload


def _json_or_text(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def _reason(response: httpx.Response) -> str:
    data = _json_or_text(response)
    if isinstance(data, dict):
        detail = data.get("error") or data.get("detail") or data.get("message")
        if detail:
            return f" ({detail})"
    return ""


def _receipt_reason(receipt: SettlementReceipt) -> str:
    extra = receipt.model_extra or {}
    detail = extra.get("errorReason") or extra.get("error")
    return f": {detail}" if detail else ""


def summarize(events: Iterable[ProgressEvent]) -> str:
    """One line per event, e.g. as an assertion message."""
    return "\n".join(f"[{event.type.value}] {event.message}" for event in events)
