"""
Parsing for M-Pesa result callbacks.

Daraja posts results as:

    {"Result": {"ResultCode": 0, "ResultDesc": "...",
                "ConversationID": "AG_...", "OriginatorConversationID": "...",
                "TransactionID": "...",
                "ResultParameters": {"ResultParameter": [{"Key": ..., "Value": ...}]}}}
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

from bankfeeds.integrations.normalization import MAX_AMOUNT

logger = logging.getLogger(__name__)

WORKING_ACCOUNT = "Working Account"


@dataclass
class MpesaResult:
    conversation_id: Optional[str]
    originator_conversation_id: Optional[str]
    result_code: Optional[int]
    result_description: Optional[str]
    transaction_id: Optional[str]
    parameters: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0


def flatten_parameters(parameters: Any) -> Dict[str, Any]:
    """Turn [{"Key": k, "Value": v}, ...] into {k: v}. A lone dict is accepted too."""
    if isinstance(parameters, dict):
        parameters = [parameters]
    flat: Dict[str, Any] = {}
    for param in parameters or []:
        if isinstance(param, dict) and "Key" in param:
            flat[param["Key"]] = param.get("Value")
    return flat


def _result_code(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_result(payload: Dict[str, Any]) -> Optional[MpesaResult]:
    """Return None when the payload has no Result object."""
    content = payload.get("Result") if isinstance(payload, dict) else None
    if not isinstance(content, dict):
        return None

    result_parameters = content.get("ResultParameters") or {}
    if isinstance(result_parameters, dict):
        result_parameters = result_parameters.get("ResultParameter")

    return MpesaResult(
        conversation_id=content.get("ConversationID"),
        originator_conversation_id=content.get("OriginatorConversationID"),
        result_code=_result_code(content.get("ResultCode")),
        result_description=content.get("ResultDesc"),
        transaction_id=content.get("TransactionID"),
        parameters=flatten_parameters(result_parameters),
    )


def timeout_conversation_id(payload: Dict[str, Any]) -> Optional[str]:
    """Queue timeouts arrive either wrapped in Result or as a flat object."""
    result = parse_result(payload)
    if result and result.conversation_id:
        return result.conversation_id
    if isinstance(payload, dict):
        return payload.get("ConversationID") or payload.get("OriginatorConversationID")
    return None


def parse_account_balances(balance_string: Optional[str]) -> Dict[str, Decimal]:
    """
    Parse "Working Account|KES|50000.00|50000.00|0.00|0.00&Utility Account|KES|..."
    into {"Working Account": Decimal("50000.00"), ...}.
    """
    balances: Dict[str, Decimal] = {}
    if not balance_string:
        return balances

    for entry in str(balance_string).split("&"):
        parts = entry.split("|")
        if len(parts) < 3:
            continue
        try:
            balance = Decimal(parts[2].strip())
            if not balance.is_finite():
                raise ValueError("not a finite number")
            balance = balance.quantize(Decimal("0.01"))
        except (ArithmeticError, ValueError):
            logger.warning(f"Could not parse M-Pesa balance for {parts[0]!r}")
            continue
        if abs(balance) > MAX_AMOUNT:
            logger.warning(f"M-Pesa balance for {parts[0]!r} is out of range, ignoring it")
            continue
        balances[parts[0].strip()] = balance
    return balances


def working_account_balance(parameters: Dict[str, Any]) -> Optional[Decimal]:
    balances = parse_account_balances(parameters.get("AccountBalance"))
    if not balances:
        return None
    if WORKING_ACCOUNT in balances:
        return balances[WORKING_ACCOUNT]
    return next(iter(balances.values()))


def status_result_to_transaction(
    result: MpesaResult,
    shortcode: Optional[str],
    queried_transaction_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Map a TransactionStatusQuery result onto the callback transaction shape
    understood by MpesaAdapter.normalize_transaction.

    Money leaving our shortcode is a Debit; everything else is a Credit.
    """
    params = result.parameters
    debit_party = str(params.get("DebitPartyName") or "")
    is_debit = bool(shortcode) and debit_party.strip().startswith(str(shortcode))

    reason = params.get("TransactionReason") or "Query"
    counterparty = params.get("CreditPartyName") if is_debit else params.get("DebitPartyName")
    description = f"{reason} - {counterparty}" if counterparty else str(reason)

    return {
        "TransactionID": params.get("ReceiptNo") or result.transaction_id or queried_transaction_id,
        "TransactionDate": params.get("FinalisedTime") or params.get("InitiatedTime") or params.get("TransactionDate"),
        "TransactionReason": description,
        "Amount": params.get("Amount"),
        "TransactionType": "Debit" if is_debit else "Credit",
    }
