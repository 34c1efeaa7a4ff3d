"""
stk_push.py - M-Pesa STK push result codes, simulator and callback parsing

RESULT CODES (Daraja):
    0     Success                            -> success
    1     Insufficient balance               -> failed
    1032  Request cancelled by user          -> cancelled
    1037  DS timeout, user cannot be reached -> timeout
    other                                    -> failed

CALLBACK PAYLOAD (Daraja STK callback):
    {
      "Body": {
        "stkCallback": {
          "MerchantRequestID": "29115-34620561-1",
          "CheckoutRequestID": "ws_CO_191220191020363925",
          "ResultCode": 0,
          "ResultDesc": "The service request is processed successfully.",
          "CallbackMetadata": {
            "Item": [
              {"Name": "Amount", "Value": 3500.00},
              {"Name": "MpesaReceiptNumber", "Value": "NLJ7RT61SV"},
              {"Name": "TransactionDate", "Value": 20191219102115},
              {"Name": "PhoneNumber", "Value": 254708374149}
            ]
          }
        }
      }
    }

    CallbackMetadata is only present on success.
"""

import logging
import random
import string
from datetime import datetime
from enum import Enum
from typing import Any, Dict, NamedTuple, Optional, Tuple
from uuid import uuid4

logger = logging.getLogger(__name__)

RESULT_SUCCESS = "0"
RESULT_INSUFFICIENT_FUNDS = "1"
RESULT_CANCELLED = "1032"
RESULT_TIMEOUT = "1037"

RESULT_DESCRIPTIONS = {
    RESULT_SUCCESS: "The service request is processed successfully.",
    RESULT_INSUFFICIENT_FUNDS: "The balance is insufficient for the transaction.",
    RESULT_CANCELLED: "Request cancelled by user",
    RESULT_TIMEOUT: "DS timeout user cannot be reached",
}


class MpesaStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


def status_for_result_code(result_code: Optional[str]) -> MpesaStatus:
    if result_code == RESULT_SUCCESS:
        return MpesaStatus.SUCCESS
    if result_code == RESULT_CANCELLED:
        return MpesaStatus.CANCELLED
    if result_code == RESULT_TIMEOUT:
        return MpesaStatus.TIMEOUT
    return MpesaStatus.FAILED


class StkResult(NamedTuple):
    checkout_request_id: str
    result_code: str
    result_desc: str
    receipt_number: Optional[str] = None
    transaction_date: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.result_code == RESULT_SUCCESS


def parse_stk_callback(payload: Dict[str, Any]) -> StkResult:
    """Read a Daraja STK callback body. Raises ValueError on a malformed payload."""
    try:
        callback = payload["Body"]["stkCallback"]
        checkout_request_id = str(callback["CheckoutRequestID"])
        result_code = str(callback["ResultCode"])
    except (KeyError, TypeError) as e:
        raise ValueError(f"Malformed STK callback: missing {e}") from e

    receipt_number = None
    transaction_date = None
    if result_code == RESULT_SUCCESS:
        items = (callback.get("CallbackMetadata") or {}).get("Item") or []
        for item in items:
            name = item.get("Name")
            if name == "MpesaReceiptNumber":
                receipt_number = str(item.get("Value"))
            elif name == "TransactionDate" and item.get("Value") is not None:
                transaction_date = datetime.strptime(str(item["Value"]), "%Y%m%d%H%M%S")

    return StkResult(
        checkout_request_id=checkout_request_id,
        result_code=result_code,
        result_desc=str(callback.get("ResultDesc") or RESULT_DESCRIPTIONS.get(result_code, "")),
        receipt_number=receipt_number,
        transaction_date=transaction_date,
    )


class StkPushSimulator:
    """Simulated Daraja STK push with an 80% approval rate."""

    SUCCESS_RATE = 0.8
    FAILURE_CODES = [RESULT_INSUFFICIENT_FUNDS, RESULT_CANCELLED, RESULT_TIMEOUT]

    def __init__(self, success_rate: float = SUCCESS_RATE, rng: Optional[random.Random] = None):
        self.success_rate = success_rate
        self.rng = rng or random.Random()

    def request(self) -> Tuple[str, str]:
        """Returns (merchant_request_id, checkout_request_id) as Daraja would."""
        merchant_request_id = f"{self.rng.randint(10000, 99999)}-{self.rng.randint(10000000, 99999999)}-1"
        checkout_request_id = f"ws_CO_{datetime.now():%d%m%Y%H%M%S}{uuid4().hex[:6]}"
        return merchant_request_id, checkout_request_id

    def resolve(self, checkout_request_id: str) -> StkResult:
        """Decide how the customer answered the prompt."""
        if self.rng.random() > self.success_rate:
            code = self.rng.choice(self.FAILURE_CODES)
            logger.info(f"STK push {checkout_request_id} FAILED: {code}")
            return StkResult(checkout_request_id, code, RESULT_DESCRIPTIONS[code])

        receipt_number = "".join(self.rng.choices(string.ascii_uppercase + string.digits, k=10))
        logger.info(f"STK push {checkout_request_id} SUCCESS: {receipt_number}")
        return StkResult(
            checkout_request_id,
            RESULT_SUCCESS,
            RESULT_DESCRIPTIONS[RESULT_SUCCESS],
            receipt_number=receipt_number,
            transaction_date=datetime.now(),
        )
