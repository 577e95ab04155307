"""
Relay Transport Tests
=====================
HTTP status mapping and send headers against a scripted session.
"""
import pytest

from chainarb.errors import SendFailureTerminal, SendFailureTransient, StatusUnknown
from chainarb.execution import ExecutionPlanner
from chainarb.models import TxStatus
from chainarb.transport import RelayTransport


class FakeResponse:
    def __init__(self, status=200, body=None, json_error=None):
        self.status = status
        self._body = body if body is not None else {}
        self._json_error = json_error

    async def json(self):
        if self._json_error is not None:
            raise self._json_error
        return self._body

    async def text(self):
        return str(self._body)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []
        self.closed = False

    def request(self, method, url, json=None, headers=None):
        self.requests.append({'method': method, 'url': url, 'json': json, 'headers': headers})
        return self.responses.pop(0)

    async def close(self):
        self.closed = True


@pytest.fixture
def plan(config, opp_factory):
    return ExecutionPlanner(config).build(opp_factory(), 100.0)


def relay(session):
    return RelayTransport("http://relay.local/", 5.0, 18, session_factory=lambda: session)


class TestSend:
    @pytest.mark.asyncio
    async def test_send_carries_idempotency_key(self, plan):
        session = FakeSession(FakeResponse(body={'messageId': 'm-1'}))

        assert await relay(session).send(plan) == 'm-1'
        sent = session.requests[0]
        assert (sent['method'], sent['url']) == ("POST", "http://relay.local/messages")
        assert sent['headers'] == {'Idempotency-Key': plan.plan_id}
        assert sent['json']['planId'] == plan.plan_id

    @pytest.mark.asyncio
    async def test_unreadable_accepted_body_is_terminal(self, plan):
        session = FakeSession(FakeResponse(status=200, json_error=ValueError("Expecting value")))
        with pytest.raises(SendFailureTerminal):
            await relay(session).send(plan)

    @pytest.mark.asyncio
    async def test_accepted_without_id_is_terminal(self, plan):
        session = FakeSession(FakeResponse(body={'ok': True}))
        with pytest.raises(SendFailureTerminal):
            await relay(session).send(plan)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,error", [
        (503, SendFailureTransient),
        (500, SendFailureTransient),
        (400, SendFailureTerminal),
        (409, SendFailureTerminal),
    ])
    async def test_status_mapping(self, plan, status, error):
        session = FakeSession(FakeResponse(status=status, body="nope"))
        with pytest.raises(error):
            await relay(session).send(plan)


class TestFeesAndStatus:
    @pytest.mark.asyncio
    async def test_fee_quote_parsed(self, plan):
        session = FakeSession(FakeResponse(body={
            'feeToken': 'LINK', 'feeNative': '0.02', 'gasLimit': 200000, 'usdEstimate': 0.35,
        }))
        fees = await relay(session).estimate_fees(plan)

        assert fees.usd_estimate == pytest.approx(0.35)
        assert fees.gas_limit == 200000
        assert session.requests[0]['headers'] is None

    @pytest.mark.asyncio
    async def test_malformed_fee_quote_is_transient(self, plan):
        session = FakeSession(FakeResponse(body={'feeToken': 'LINK'}))
        with pytest.raises(SendFailureTransient):
            await relay(session).estimate_fees(plan)

    @pytest.mark.asyncio
    async def test_status_report(self):
        session = FakeSession(FakeResponse(body={
            'status': 'failed', 'errorMessage': 'sell reverted', 'filledLegs': ['buy'], 'feeUsd': 0.4,
        }))
        report = await relay(session).get_status("m-1")

        assert report.status == TxStatus.FAILED
        assert report.filled_legs == ("buy",)
        assert report.actual_fee_usd == pytest.approx(0.4)

    @pytest.mark.asyncio
    async def test_unreadable_status_is_unknown(self):
        session = FakeSession(FakeResponse(json_error=ValueError("truncated")))
        with pytest.raises(StatusUnknown):
            await relay(session).get_status("m-1")

    @pytest.mark.asyncio
    async def test_close_closes_session(self, plan):
        session = FakeSession(FakeResponse(body={'messageId': 'm-1'}))
        transport = relay(session)
        await transport.send(plan)
        await transport.close()
        assert session.closed
