"""
Unit Tests for the Brokerage Journal Client

Reliability Level: SOVEREIGN TIER

Tests BrokerageClient against a mocked requests session:
- journal payload shape (Decimal amounts as 2-place strings, ref marker)
- POST is never retried after it may have landed
- GET retries on 429/5xx with backoff
- find_journal resolves by client_ref
"""

from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from requests.exceptions import Timeout

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from app.exchange.brokerage_client import (
    BrokerageClient,
    BrokerageClientError,
    BrokerageTimeoutError,
    describe_with_ref,
    ref_from_description,
)
from app.exchange.rate_limiter import ExponentialBackoff


def response(status_code: int, body=None) -> MagicMock:
    mock = MagicMock()
    mock.status_code = status_code
    mock.json.return_value = body if body is not None else {}
    return mock


def make_client(session: MagicMock) -> BrokerageClient:
    return BrokerageClient(
        base_url="https://broker.test/",
        api_key="key",
        api_secret="secret",
        firm_account_id="FIRM",
        backoff=ExponentialBackoff(base_delay=0.0, jitter=0.0),
        session=session,
    )


JOURNAL_BODY = {
    "id": "jnl-1",
    "status": "executed",
    "net_amount": "50.10",
    "to_account": "acct-1",
    "description": "Points conversion funding [ref=jref_abc]",
}


class TestReferenceMarker:

    def test_round_trip(self) -> None:
        assert ref_from_description(describe_with_ref("Funding", "jref_1")) == "jref_1"

    def test_missing_marker(self) -> None:
        assert ref_from_description("Funding") is None
        assert ref_from_description(None) is None


class TestCreateJournal:

    def test_payload(self) -> None:
        session = MagicMock()
        session.request.return_value = response(200, JOURNAL_BODY)
        client = make_client(session)

        receipt = client.create_journal(
            "acct-1", Decimal("50.1"), "Points conversion funding", "jref_abc"
        )

        args, kwargs = session.request.call_args
        assert args == ("POST", "https://broker.test/v1/journals")
        assert kwargs["json"] == {
            "from_account": "FIRM",
            "entry_type": "JNLC",
            "to_account": "acct-1",
            "amount": "50.10",
            "description": "Points conversion funding [ref=jref_abc]",
        }
        assert receipt.journal_id == "jnl-1"
        assert receipt.amount == Decimal("50.10")
        assert receipt.client_ref == "jref_abc"

    @patch("app.exchange.brokerage_client.time.sleep")
    def test_post_timeout_not_retried(self, sleep) -> None:
        session = MagicMock()
        session.request.side_effect = Timeout("slow")
        client = make_client(session)

        with pytest.raises(BrokerageTimeoutError):
            client.create_journal("acct-1", Decimal("5.00"), "Funding", "jref_1")

        assert session.request.call_count == 1
        sleep.assert_not_called()

    @patch("app.exchange.brokerage_client.time.sleep")
    def test_post_server_error_not_retried(self, sleep) -> None:
        session = MagicMock()
        session.request.return_value = response(503, {"message": "unavailable"})
        client = make_client(session)

        with pytest.raises(BrokerageClientError) as exc_info:
            client.create_journal("acct-1", Decimal("5.00"), "Funding", "jref_1")

        assert exc_info.value.http_status == 503
        assert session.request.call_count == 1

    @patch("app.exchange.brokerage_client.time.sleep")
    def test_post_rate_limit_retried(self, sleep) -> None:
        session = MagicMock()
        session.request.side_effect = [response(429), response(200, JOURNAL_BODY)]
        client = make_client(session)

        receipt = client.create_journal("acct-1", Decimal("50.10"), "Funding", "jref_abc")

        assert receipt.journal_id == "jnl-1"
        assert session.request.call_count == 2
        assert sleep.call_count == 1

    def test_rejection_carries_message(self) -> None:
        session = MagicMock()
        session.request.return_value = response(422, {"message": "account closed"})
        client = make_client(session)

        with pytest.raises(BrokerageClientError) as exc_info:
            client.create_journal("acct-1", Decimal("5.00"), "Funding", "jref_1")

        assert "account closed" in str(exc_info.value)
        assert exc_info.value.http_status == 422


class TestReads:

    @patch("app.exchange.brokerage_client.time.sleep")
    def test_get_retries_server_errors(self, sleep) -> None:
        session = MagicMock()
        session.request.side_effect = [
            response(502),
            Timeout("slow"),
            response(200, JOURNAL_BODY),
        ]
        client = make_client(session)

        receipt = client.get_journal("jnl-1")

        assert receipt.journal_id == "jnl-1"
        assert session.request.call_count == 3

    @patch("app.exchange.brokerage_client.time.sleep")
    def test_get_retries_exhausted(self, sleep) -> None:
        session = MagicMock()
        session.request.return_value = response(500)
        client = make_client(session)

        with pytest.raises(BrokerageClientError):
            client.get_firm_balance()

        assert session.request.call_count == BrokerageClient.MAX_RETRIES

    def test_get_journal_not_found(self) -> None:
        session = MagicMock()
        session.request.return_value = response(404)
        assert make_client(session).get_journal("missing") is None

    def test_find_journal_by_ref(self) -> None:
        session = MagicMock()
        session.request.return_value = response(200, [
            dict(JOURNAL_BODY, id="jnl-0", description="Other [ref=jref_other]"),
            JOURNAL_BODY,
        ])
        client = make_client(session)

        found = client.find_journal("jref_abc", to_account="acct-1")

        assert found.journal_id == "jnl-1"
        assert session.request.call_args[1]["params"] == {
            "entry_type": "JNLC",
            "to_account": "acct-1",
        }
        assert client.find_journal("jref_none") is None

    def test_find_journal_rejects_non_list(self) -> None:
        session = MagicMock()
        session.request.return_value = response(200, {"id": "x"})
        with pytest.raises(BrokerageClientError):
            make_client(session).find_journal("jref_abc")

    def test_firm_balance(self) -> None:
        session = MagicMock()
        session.request.return_value = response(200, {"cash": "1234.565"})

        assert make_client(session).get_firm_balance() == Decimal("1234.56")


class TestConstruction:

    def test_missing_credentials(self) -> None:
        with pytest.raises(BrokerageClientError):
            BrokerageClient("https://broker.test", "", "", "FIRM", session=MagicMock())


class TestExponentialBackoff:

    def test_delays_grow_and_cap(self) -> None:
        backoff = ExponentialBackoff(base_delay=1.0, multiplier=2.0, max_delay=5.0, jitter=0.0)

        assert [backoff.get_delay() for _ in range(4)] == [1.0, 2.0, 4.0, 5.0]
        assert backoff.attempt == 4

        backoff.reset()
        assert backoff.get_delay() == 1.0

    def test_jitter_stays_under_cap(self) -> None:
        backoff = ExponentialBackoff(base_delay=4.0, max_delay=5.0, jitter=1.0)
        assert all(backoff.get_delay() <= 5.0 for _ in range(10))

    def test_invalid_arguments(self) -> None:
        with pytest.raises(ValueError):
            ExponentialBackoff(multiplier=0.5)
        with pytest.raises(ValueError):
            ExponentialBackoff(jitter=2.0)
