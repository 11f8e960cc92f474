"""
Unit tests for the generic OAuth2 REST bank adapter against a fake bank.
"""
import os
import sys
from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace
from urllib.parse import parse_qs

import httpx

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from bankfeeds.integrations.errors import AuthFailure, FetchFailure  # noqa: E402
from bankfeeds.integrations.generic_rest import GenericRestAdapter  # noqa: E402
from tests.support import REST_CREDENTIALS, RecordingTransport, json_response  # noqa: E402

BASE_URL = "https://bank.example.com"
ACCOUNT = SimpleNamespace(id="acct-1", external_account_id="0123456789")
START = datetime(2024, 1, 1, tzinfo=timezone.utc)

STATEMENT = {
    "transactions": [
        {
            "transaction_id": "TX-1",
            "booking_date": "2024-01-15",
            "narrative": "Supplier payment",
            "amount": "150.00",
            "transaction_type": "DEBIT",
        },
        {
            "transaction_id": "TX-2",
            "booking_date": "2024-01-16T10:00:00+03:00",
            "narrative": "Customer deposit",
            "amount": 80,
            "transaction_type": "CREDIT",
        },
    ]
}


def _bank(statement_status: int = 200, statement_body=None, token_status: int = 200):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth2/token":
            if token_status != 200:
                return json_response(token_status, {"error": "invalid_client"})
            return json_response(200, {"access_token": "tok-1", "expires_in": 3599})
        if request.url.path == "/v1/accounts/0123456789/transactions":
            return json_response(statement_status, STATEMENT if statement_body is None else statement_body)
        return json_response(404, {"error": "not found"})

    return RecordingTransport(handler)


def _adapter(transport, **kwargs) -> GenericRestAdapter:
    return GenericRestAdapter(BASE_URL, transport=transport, **kwargs)


def test_authenticate_returns_session() -> None:
    transport = _bank()
    session = _adapter(transport).authenticate(REST_CREDENTIALS)

    assert session.access_token == "tok-1"
    assert session.provider == "generic_rest"
    form = parse_qs(transport.requests[0].content.decode("utf-8"))
    assert form["grant_type"] == ["client_credentials"]
    assert form["client_id"] == ["client-123"]
    print("✓ authenticate returns session")


def test_authenticate_rejected() -> None:
    adapter = _adapter(_bank(token_status=401))
    try:
        adapter.authenticate(REST_CREDENTIALS)
    except AuthFailure as e:
        assert e.status_code == 401
        assert "invalid_client" in e.diagnostic
    else:
        raise AssertionError("expected AuthFailure")
    print("✓ authenticate rejected")


def test_authenticate_missing_credentials() -> None:
    transport = _bank()
    try:
        _adapter(transport).authenticate({"client_id": "only-id"})
    except AuthFailure:
        pass
    else:
        raise AssertionError("expected AuthFailure")
    assert transport.requests == []
    print("✓ missing credentials never reach the bank")


def test_fetch_transactions_normalizes() -> None:
    transport = _bank()
    adapter = _adapter(transport)
    session = adapter.authenticate(REST_CREDENTIALS)

    lines = adapter.fetch_transactions(session, ACCOUNT, START)

    assert [line.reference for line in lines] == ["TX-1", "TX-2"]
    statement_request = transport.requests[1]
    assert statement_request.headers["Authorization"] == "Bearer tok-1"
    assert statement_request.url.params["from_date"] == "2024-01-01"
    assert lines[0].debit == Decimal("150.00") and lines[0].credit == Decimal("0.00")
    assert lines[1].credit == Decimal("80.00") and lines[1].debit == Decimal("0.00")
    # Midnight Nairobi time is 21:00 UTC the previous day.
    assert lines[0].transaction_date == datetime(2024, 1, 14, 21, 0, tzinfo=timezone.utc)
    assert lines[1].transaction_date == datetime(2024, 1, 16, 7, 0, tzinfo=timezone.utc)
    print("✓ fetch normalizes statement")


def test_fetch_failure_returns_empty() -> None:
    adapter = _adapter(_bank(statement_status=500, statement_body={"error": "boom"}))
    session = adapter.authenticate(REST_CREDENTIALS)

    assert adapter.fetch_transactions(session, ACCOUNT, START) == []
    print("✓ fetch failure returns no lines")


def test_fetch_timeout_returns_empty() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth2/token":
            return json_response(200, {"access_token": "tok-1"})
        raise httpx.ConnectTimeout("timed out", request=request)

    adapter = _adapter(httpx.MockTransport(handler))
    session = adapter.authenticate(REST_CREDENTIALS)

    assert adapter.fetch_transactions(session, ACCOUNT, START) == []
    print("✓ fetch timeout returns no lines")


def test_strict_fetch_failure_raises() -> None:
    adapter = _adapter(_bank(statement_status=503), raise_on_fetch_failure=True)
    session = adapter.authenticate(REST_CREDENTIALS)
    try:
        adapter.fetch_transactions(session, ACCOUNT, START)
    except FetchFailure as e:
        assert e.status_code == 503
    else:
        raise AssertionError("expected FetchFailure")
    print("✓ strict mode propagates fetch failure")


def test_normalize_edge_cases() -> None:
    adapter = _adapter(_bank())

    line = adapter.normalize_transaction({"amount": "-42.5", "transaction_type": "CREDIT"})
    assert line.description == "N/A"
    assert line.credit == Decimal("42.50")
    assert line.reference.startswith("generic_rest-")

    line = adapter.normalize_transaction({
        "transaction_id": "TX-9",
        "booking_date": "not-a-date",
        "amount": "abc",
        "transaction_type": "DEBIT",
    })
    assert line.debit == Decimal("0.00") and line.credit == Decimal("0.00")
    assert line.transaction_date.tzinfo is not None

    # Same payload without an id always maps to the same reference.
    raw = {"booking_date": "2024-01-15", "amount": "5", "narrative": "Fee"}
    assert adapter.normalize_transaction(raw).reference == adapter.normalize_transaction(dict(raw)).reference
    print("✓ normalize edge cases")


def test_normalize_out_of_range_values() -> None:
    adapter = _adapter(_bank())
    payloads = [
        {"transaction_id": "TX-BIG", "amount": "1e30", "transaction_type": "DEBIT"},
        {"transaction_id": "TX-29", "amount": "1" * 29, "transaction_type": "CREDIT"},
        {"transaction_id": "TX-MAX", "amount": "10000000000000", "transaction_type": "CREDIT"},
        {"transaction_id": "TX-NAN", "amount": "NaN", "transaction_type": "DEBIT"},
        {"transaction_id": "TX-INF", "amount": "-Infinity", "transaction_type": "DEBIT"},
        {"transaction_id": "TX-OLD", "booking_date": "0001-01-01", "amount": "1"},
        {"transaction_id": "TX-NEW", "booking_date": "9999-12-31T23:59:59-05:00", "amount": "1"},
        {"transaction_id": "X" * 300, "amount": "1"},
    ]

    for raw in payloads:
        line = adapter.normalize_transaction(raw)
        assert line.debit * line.credit == 0
        assert line.debit <= Decimal("9999999999999.99") and line.credit <= Decimal("9999999999999.99")
        assert line.transaction_date.tzinfo is not None
        assert len(line.reference) <= 255

    assert adapter.normalize_transaction(payloads[0]).debit == Decimal("0.00")
    assert adapter.normalize_transaction(payloads[-1]).reference == adapter.normalize_transaction(payloads[-1]).reference
    assert adapter.normalize_transaction(payloads[-1]).reference.startswith("generic_rest-")
    print("✓ out-of-range values normalized without raising")


if __name__ == "__main__":
    test_authenticate_returns_session()
    test_authenticate_rejected()
    test_authenticate_missing_credentials()
    test_fetch_transactions_normalizes()
    test_fetch_failure_returns_empty()
    test_fetch_timeout_returns_empty()
    test_strict_fetch_failure_raises()
    test_normalize_edge_cases()
    test_normalize_out_of_range_values()
    print("All generic REST adapter tests passed.")
