"""
Unit tests for the M-Pesa Daraja adapter against a fake Daraja API.
"""
import base64
import json
import os
import sys
import tempfile
from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace

import httpx

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from bankfeeds.integrations.errors import AuthFailure, ConfigurationError, CredentialEnvelopeError  # noqa: E402
from bankfeeds.integrations.mpesa_adapter import MpesaAdapter, callback_signature  # noqa: E402
from bankfeeds.security.security_credential import FileCertificateStore  # noqa: E402
from tests.support import (  # noqa: E402
    MPESA_CREDENTIALS,
    RecordingTransport,
    decrypt_security_credential,
    json_response,
    write_certificate,
)

ACCOUNT = SimpleNamespace(id="acct-mpesa", external_account_id="600000")
START = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _daraja(response_code: str = "0", conversation_id: str = "AG_20240115_0001"):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth/v1/generate":
            return json_response(200, {"access_token": "mpesa-token", "expires_in": "3599"})
        if request.url.path in ("/mpesa/accountbalance/v1/query", "/mpesa/transactionstatus/v1/query"):
            return json_response(200, {
                "OriginatorConversationID": "orig-1",
                "ConversationID": conversation_id,
                "ResponseCode": response_code,
                "ResponseDescription": "Accept the service request successfully.",
            })
        return json_response(404, {})

    return RecordingTransport(handler)


def _adapter(cert_dir: str, transport, **kwargs) -> MpesaAdapter:
    return MpesaAdapter(
        certificate_store=FileCertificateStore(cert_dir),
        callback_base_url="https://erp.example.com/",
        transport=transport,
        **kwargs,
    )


def test_authenticate_uses_environment_and_basic_auth() -> None:
    with tempfile.TemporaryDirectory() as cert_dir:
        transport = _daraja()
        session = _adapter(cert_dir, transport).authenticate(MPESA_CREDENTIALS)

        request = transport.requests[0]
        assert request.url.host == "sandbox.safaricom.co.ke"
        assert request.url.params["grant_type"] == "client_credentials"
        assert request.headers["Authorization"] == "Basic " + base64.b64encode(b"ck:cs").decode("ascii")
        assert session.access_token == "mpesa-token"
        assert session.environment == "sandbox"
        assert "Safaricom999" not in repr(session)

        transport = _daraja()
        _adapter(cert_dir, transport).authenticate({**MPESA_CREDENTIALS, "env": "production"})
        assert transport.requests[0].url.host == "api.safaricom.co.ke"
        print("✓ authenticate picks environment")


def test_authenticate_defaults_to_sandbox() -> None:
    with tempfile.TemporaryDirectory() as cert_dir:
        transport = _daraja()
        credentials = {key: value for key, value in MPESA_CREDENTIALS.items() if key != "env"}
        session = _adapter(cert_dir, transport).authenticate(credentials)
        assert session.environment == "sandbox"
        print("✓ environment defaults to sandbox")


def test_authenticate_rejected() -> None:
    transport = httpx.MockTransport(lambda request: json_response(400, {"errorMessage": "Invalid Credentials"}))
    with tempfile.TemporaryDirectory() as cert_dir:
        try:
            _adapter(cert_dir, transport).authenticate(MPESA_CREDENTIALS)
        except AuthFailure as e:
            assert e.status_code == 400
            assert "Invalid Credentials" in e.diagnostic
        else:
            raise AssertionError("expected AuthFailure")
        print("✓ authenticate rejected")


def test_balance_check_payload() -> None:
    with tempfile.TemporaryDirectory() as cert_dir:
        key = write_certificate(cert_dir, "sandbox")
        transport = _daraja()
        adapter = _adapter(cert_dir, transport, callback_signing_secret="s3cret")
        session = adapter.authenticate(MPESA_CREDENTIALS)

        ack = adapter.request_balance_check(session, ACCOUNT)

        assert ack.accepted is True
        assert ack.conversation_id == "AG_20240115_0001"
        command = transport.requests[1]
        assert command.headers["Authorization"] == "Bearer mpesa-token"
        payload = json.loads(command.content)
        assert payload["CommandID"] == "AccountBalance"
        assert payload["PartyA"] == "600000"
        assert payload["IdentifierType"] == "4"
        assert payload["Initiator"] == "testapi"
        assert decrypt_security_credential(key, payload["SecurityCredential"]) == "Safaricom999!*!"
        signature = callback_signature("/api/mpesa/balance-result", "s3cret")
        assert payload["ResultURL"] == f"https://erp.example.com/api/mpesa/balance-result?signature={signature}"
        assert payload["QueueTimeOutURL"].startswith("https://erp.example.com/api/mpesa/timeout?signature=")
        print("✓ balance check payload")


def test_security_credential_is_fresh_per_command() -> None:
    with tempfile.TemporaryDirectory() as cert_dir:
        write_certificate(cert_dir, "sandbox")
        transport = _daraja()
        adapter = _adapter(cert_dir, transport)
        session = adapter.authenticate(MPESA_CREDENTIALS)

        adapter.request_balance_check(session, ACCOUNT)
        adapter.request_balance_check(session, ACCOUNT)

        first = json.loads(transport.requests[1].content)["SecurityCredential"]
        second = json.loads(transport.requests[2].content)["SecurityCredential"]
        # PKCS#1 v1.5 padding is random, so a recomputed credential differs.
        assert first != second
        print("✓ security credential recomputed per command")


def test_missing_certificate_fails_command() -> None:
    with tempfile.TemporaryDirectory() as cert_dir:
        transport = _daraja()
        adapter = _adapter(cert_dir, transport)
        session = adapter.authenticate(MPESA_CREDENTIALS)
        try:
            adapter.request_balance_check(session, ACCOUNT)
        except CredentialEnvelopeError:
            pass
        else:
            raise AssertionError("expected CredentialEnvelopeError")
        assert transport.paths() == ["/oauth/v1/generate"]
        print("✓ missing certificate fails before sending")


def test_missing_initiator_is_configuration_error() -> None:
    with tempfile.TemporaryDirectory() as cert_dir:
        write_certificate(cert_dir, "sandbox")
        adapter = _adapter(cert_dir, _daraja())
        session = adapter.authenticate({**MPESA_CREDENTIALS, "initiator_password": None})
        try:
            adapter.request_balance_check(session, ACCOUNT)
        except ConfigurationError:
            pass
        else:
            raise AssertionError("expected ConfigurationError")
        print("✓ missing initiator rejected")


def test_fetch_transactions_returns_balance_check_line() -> None:
    with tempfile.TemporaryDirectory() as cert_dir:
        write_certificate(cert_dir, "sandbox")
        adapter = _adapter(cert_dir, _daraja())
        session = adapter.authenticate(MPESA_CREDENTIALS)

        lines = adapter.fetch_transactions(session, ACCOUNT, START)

        assert len(lines) == 1
        line = lines[0]
        assert line.is_balance_check
        assert line.reference == "BAL-AG_20240115_0001"
        assert line.debit == Decimal("0.00") and line.credit == Decimal("0.00")
        assert line.balance_check.correlation_id == "AG_20240115_0001"
        assert line.balance_check.balance is None
        print("✓ fetch yields one balance-check line")


def test_fetch_transactions_not_accepted() -> None:
    with tempfile.TemporaryDirectory() as cert_dir:
        write_certificate(cert_dir, "sandbox")
        adapter = _adapter(cert_dir, _daraja(response_code="1"))
        session = adapter.authenticate(MPESA_CREDENTIALS)

        assert adapter.fetch_transactions(session, ACCOUNT, START) == []
        print("✓ rejected balance check yields no lines")


def test_transaction_status_request() -> None:
    with tempfile.TemporaryDirectory() as cert_dir:
        write_certificate(cert_dir, "sandbox")
        transport = _daraja(conversation_id="AG_STATUS_1")
        adapter = _adapter(cert_dir, transport)
        session = adapter.authenticate(MPESA_CREDENTIALS)

        ack = adapter.request_transaction_status(session, ACCOUNT, "QK12345678")

        assert ack.accepted and ack.conversation_id == "AG_STATUS_1"
        payload = json.loads(transport.requests[1].content)
        assert payload["CommandID"] == "TransactionStatusQuery"
        assert payload["TransactionID"] == "QK12345678"
        assert payload["ResultURL"] == "https://erp.example.com/api/mpesa/status-result"
        print("✓ transaction status request")


def test_normalize_transaction() -> None:
    with tempfile.TemporaryDirectory() as cert_dir:
        adapter = _adapter(cert_dir, _daraja())

        line = adapter.normalize_transaction({
            "TransactionID": "QK1",
            "TransactionDate": "20240115103000",
            "TransactionReason": "Paid supplier",
            "Amount": "500",
            "TransactionType": "Debit",
        })
        assert line.debit == Decimal("500.00") and line.credit == Decimal("0.00")
        assert line.transaction_date == datetime(2024, 1, 15, 7, 30, tzinfo=timezone.utc)

        line = adapter.normalize_transaction({"TransactionID": "QK2", "Amount": "20", "TransactionType": "Credit"})
        assert line.credit == Decimal("20.00")
        assert line.description == "M-Pesa Transaction"

        line = adapter.normalize_transaction({"TransactionID": "QK3", "Amount": "20", "TransactionType": "Reversal"})
        assert line.debit == Decimal("0.00") and line.credit == Decimal("0.00")
        print("✓ normalize transaction")


def test_normalize_out_of_range_values() -> None:
    with tempfile.TemporaryDirectory() as cert_dir:
        adapter = _adapter(cert_dir, _daraja())
        payloads = [
            {"TransactionID": "QK-BIG", "Amount": "1e30", "TransactionType": "Debit"},
            {"TransactionID": "QK-29", "Amount": "9" * 29, "TransactionType": "Credit"},
            {"TransactionID": "QK-OLD", "TransactionDate": "0001-01-01", "Amount": "5", "TransactionType": "Credit"},
            {"TransactionID": "QK-ZERO", "TransactionDate": "00000000000000", "Amount": "5", "TransactionType": "Debit"},
            {"TransactionID": "Q" * 256, "Amount": "5", "TransactionType": "Credit"},
        ]

        for raw in payloads:
            line = adapter.normalize_transaction(raw)
            assert line.debit * line.credit == 0
            assert line.transaction_date.tzinfo is not None
            assert len(line.reference) <= 255

        assert adapter.normalize_transaction(payloads[0]).debit == Decimal("0.00")
        assert adapter.normalize_transaction(payloads[2]).credit == Decimal("5.00")
        print("✓ out-of-range values normalized without raising")


if __name__ == "__main__":
    test_authenticate_uses_environment_and_basic_auth()
    test_authenticate_defaults_to_sandbox()
    test_authenticate_rejected()
    test_balance_check_payload()
    test_security_credential_is_fresh_per_command()
    test_missing_certificate_fails_command()
    test_missing_initiator_is_configuration_error()
    test_fetch_transactions_returns_balance_check_line()
    test_fetch_transactions_not_accepted()
    test_transaction_status_request()
    test_normalize_transaction()
    test_normalize_out_of_range_values()
    print("All M-Pesa adapter tests passed.")
