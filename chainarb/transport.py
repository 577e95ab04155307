# chainarb/transport.py
"""
Cross-chain transports.

`Transport` is what the messenger talks to: fee quotes, message submission and
status lookups. `PaperTransport` settles messages in memory for dry runs and
tests; `RelayTransport` speaks JSON to a relay service over HTTP.
"""
import asyncio
import itertools
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

import aiohttp

from .codec import encode_triplet, to_hex
from .errors import SendFailureTerminal, SendFailureTransient, StatusUnknown
from .models import ExecutionPlan, FeeEstimate, TxStatus


@dataclass(slots=True)
class StatusReport:
    """What the network currently says about a message."""
    status: TxStatus
    error_message: Optional[str] = None
    filled_legs: Tuple[str, ...] = ()
    actual_fee_usd: Optional[float] = None


class Transport(ABC):
    @abstractmethod
    async def estimate_fees(self, plan: ExecutionPlan) -> FeeEstimate:
        pass

    @abstractmethod
    async def send(self, plan: ExecutionPlan) -> str:
        """
        Submit the plan. Returns the opaque message id once the network accepts it.
        Raises SendFailureTransient when it is safe to try again,
        SendFailureTerminal when it is not.
        """

    @abstractmethod
    async def get_status(self, message_id: str) -> StatusReport:
        """Raises StatusUnknown when the network has no answer yet."""

    async def close(self):
        pass


@dataclass(slots=True)
class PaperOutcome:
    """Scripted settlement for one paper message."""
    status: TxStatus = TxStatus.SUCCESS
    filled_legs: Tuple[str, ...] = ("buy", "sell")
    error_message: Optional[str] = None
    actual_fee_usd: Optional[float] = None
    polls_to_settle: int = 2


class PaperTransport(Transport):
    """
    In-memory transport. Each status query moves a message one step
    (pending -> in_progress -> scripted terminal state). Outcomes are consumed
    in send order; once the script runs out every message succeeds.
    """
    def __init__(self, outcomes: Optional[List[PaperOutcome]] = None, fee_usd: float = 0.25,
                 fee_token: str = "NATIVE", send_errors: Optional[List[Exception]] = None):
        self._outcomes: Deque[PaperOutcome] = deque(outcomes or [])
        self._send_errors: Deque[Exception] = deque(send_errors or [])
        self.fee_usd = fee_usd
        self.fee_token = fee_token
        self._ids = itertools.count(1)
        self._messages: Dict[str, Tuple[PaperOutcome, int]] = {}
        self.sent: List[ExecutionPlan] = []
        self.send_attempts = 0

    async def estimate_fees(self, plan: ExecutionPlan) -> FeeEstimate:
        return FeeEstimate(fee_token=self.fee_token, fee_native=self.fee_usd,
                           gas_limit=200_000, usd_estimate=self.fee_usd)

    async def send(self, plan: ExecutionPlan) -> str:
        self.send_attempts += 1
        if self._send_errors:
            raise self._send_errors.popleft()
        message_id = f"paper-{next(self._ids):06d}"
        outcome = self._outcomes.popleft() if self._outcomes else PaperOutcome()
        self._messages[message_id] = (outcome, 0)
        self.sent.append(plan)
        return message_id

    async def get_status(self, message_id: str) -> StatusReport:
        if message_id not in self._messages:
            raise StatusUnknown(message_id)
        outcome, polls = self._messages[message_id]
        polls += 1
        self._messages[message_id] = (outcome, polls)
        if polls < outcome.polls_to_settle:
            return StatusReport(status=TxStatus.IN_PROGRESS)
        return StatusReport(
            status=outcome.status,
            error_message=outcome.error_message,
            filled_legs=outcome.filled_legs,
            actual_fee_usd=outcome.actual_fee_usd if outcome.actual_fee_usd is not None else self.fee_usd,
        )


class RelayTransport(Transport):
    """
    HTTP client for a relay service:
    POST /fees, POST /messages, GET /messages/{id}.
    5xx and timeouts are transient; any other non-2xx answer is terminal.
    A 2xx whose body cannot be read is terminal: the relay may have acted on it.

    Every POST /messages carries the plan id as `Idempotency-Key`; the relay
    returns the original message id for a key it has already accepted, so a
    retried send after a lost response never executes a plan twice.
    """
    def __init__(self, base_url: str, timeout_s: float, decimals: int,
                 session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)
        self.decimals = decimals
        self._session_factory = session_factory or (lambda: aiohttp.ClientSession(timeout=self.timeout))
        self._session: Optional[aiohttp.ClientSession] = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = self._session_factory()
        return self._session

    def _payload(self, plan: ExecutionPlan) -> Dict[str, Any]:
        expires_at = plan.opportunity.expires_at if plan.opportunity is not None else time.time()
        lead = plan.legs[0]
        return {
            'planId': plan.plan_id,
            'kind': plan.kind,
            'sourceChain': plan.source_chain,
            'destinationChain': plan.destination_chain,
            'legs': [
                {'chain': leg.chain, 'side': leg.side.value, 'amount': leg.amount, 'price': leg.price}
                for leg in plan.legs
            ],
            # price, size, expiry in the fixed-point layout the receiver decodes
            'data': to_hex(encode_triplet(lead.price, plan.position_size, int(expires_at), self.decimals)),
        }

    async def _request(self, method: str, path: str, json: Optional[dict] = None,
                       headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        session = self._get_session()
        try:
            async with session.request(method, f"{self.base_url}{path}", json=json, headers=headers) as resp:
                if resp.status >= 500:
                    raise SendFailureTransient(f"relay {resp.status} on {path}")
                if resp.status >= 400:
                    text = await resp.text()
                    raise SendFailureTerminal(f"relay rejected {path}: {resp.status} {text[:200]}")
                try:
                    return await resp.json()
                except (aiohttp.ContentTypeError, ValueError) as e:
                    raise SendFailureTerminal(f"unreadable relay response on {path}: {e!r}") from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise SendFailureTransient(f"relay unreachable on {path}: {e!r}") from e

    async def estimate_fees(self, plan: ExecutionPlan) -> FeeEstimate:
        data = await self._request("POST", "/fees", json=self._payload(plan))
        try:
            return FeeEstimate(
                fee_token=str(data['feeToken']),
                fee_native=float(data['feeNative']),
                gas_limit=int(data['gasLimit']),
                usd_estimate=float(data['usdEstimate']),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise SendFailureTransient(f"malformed fee quote: {e!r}") from e

    async def send(self, plan: ExecutionPlan) -> str:
        data = await self._request("POST", "/messages", json=self._payload(plan),
                                   headers={'Idempotency-Key': plan.plan_id})
        message_id = data.get('messageId') if isinstance(data, dict) else None
        if not message_id:
            # Accepted but unidentifiable: resubmitting could execute twice
            raise SendFailureTerminal("relay accepted the message without returning an id")
        return str(message_id)

    async def get_status(self, message_id: str) -> StatusReport:
        try:
            data = await self._request("GET", f"/messages/{message_id}")
            status = TxStatus(data['status'])
        except (SendFailureTransient, SendFailureTerminal, KeyError, TypeError, ValueError) as e:
            raise StatusUnknown(f"{message_id}: {e}") from e
        fee = data.get('feeUsd')
        return StatusReport(
            status=status,
            error_message=data.get('errorMessage'),
            filled_legs=tuple(data.get('filledLegs') or ()),
            actual_fee_usd=float(fee) if fee is not None else None,
        )

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
