"""
Simple script to send an M-Pesa balance check from the command line.

The balance itself is delivered to APP_URL/api/mpesa/balance-result; this
only prints the ConversationID to look for.
"""
import os
from types import SimpleNamespace

from dotenv import load_dotenv

from bankfeeds.config import get_settings
from bankfeeds.integrations.errors import BankIntegrationError
from bankfeeds.integrations.mpesa_adapter import MpesaAdapter
from bankfeeds.security.security_credential import FileCertificateStore

# Load environment variables
load_dotenv()

CREDENTIAL_ENV_VARS = {
    "consumer_key": "MPESA_CONSUMER_KEY",
    "consumer_secret": "MPESA_CONSUMER_SECRET",
    "initiator_name": "MPESA_INITIATOR_NAME",
    "initiator_password": "MPESA_INITIATOR_PASSWORD",
    "shortcode": "MPESA_SHORTCODE",
}


def main():
    credentials = {key: os.getenv(env_var) for key, env_var in CREDENTIAL_ENV_VARS.items()}
    missing = [CREDENTIAL_ENV_VARS[key] for key, value in credentials.items() if not value]
    if missing:
        print(f"❌ Error: {', '.join(missing)} not found in .env file")
        return 1
    credentials["env"] = os.getenv("MPESA_ENV", "sandbox")

    settings = get_settings()
    adapter = MpesaAdapter(
        certificate_store=FileCertificateStore(settings.bank_cert_dir),
        callback_base_url=settings.app_url,
        timeout=settings.http_timeout_seconds,
        callback_signing_secret=settings.callback_signing_secret,
    )
    account = SimpleNamespace(id="cli", external_account_id=credentials["shortcode"])

    print(f"💰 Requesting M-Pesa balance ({credentials['env']})...\n")
    try:
        session = adapter.authenticate(credentials)
        ack = adapter.request_balance_check(session, account)
    except BankIntegrationError as e:
        print(f"❌ {e.diagnostic}")
        return 1
    finally:
        adapter.close()

    print("=" * 50)
    if ack.accepted:
        print(f"ConversationID: {ack.conversation_id}")
        print(f"Result will be posted to {settings.app_url}/api/mpesa/balance-result")
    else:
        print(f"Request not accepted: {ack.response_code} {ack.response_description}")
    print("=" * 50)
    return 0 if ack.accepted else 1


if __name__ == "__main__":
    raise SystemExit(main())
