import os
from typing import Optional

import razorpay
import requests
import structlog
from dotenv import load_dotenv
from razorpay.errors import BadRequestError, GatewayError, ServerError, SignatureVerificationError

load_dotenv()

logger = structlog.get_logger(__name__)

RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID", "")
RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET", "")
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "INR")
STORE_NAME = os.getenv("STORE_NAME", "Storefront")


class PaymentGatewayError(Exception):
    pass


def to_paise(amount: float) -> int:
    return int(round(amount * 100))


class RazorpayPaymentService:
    """Opens Razorpay orders and verifies the signatures the checkout widget returns."""

    def __init__(self, key_id: str = RAZORPAY_KEY_ID, key_secret: str = RAZORPAY_KEY_SECRET, client=None):
        self.key_id = key_id
        if client is None and key_id:
            client = razorpay.Client(auth=(key_id, key_secret))
        self.client = client

    def create_order(self, amount: float, receipt: str, notes: Optional[dict] = None) -> dict:
        if not self.client:
            raise PaymentGatewayError("Razorpay is not configured")
        try:
            rp_order = self.client.order.create({
                'amount':   to_paise(amount),
                'currency': PAYMENT_CURRENCY,
                'receipt':  receipt,
                'notes':    notes or {},
            })
        except (BadRequestError, GatewayError, ServerError, requests.RequestException) as e:
            logger.error("Razorpay order creation failed", receipt=receipt, error=str(e))
            raise PaymentGatewayError(str(e)) from e

        logger.info("Razorpay order created", razorpay_order_id=rp_order['id'], amount=rp_order['amount'])
        return {
            'razorpay_order_id': rp_order['id'],
            'amount':            rp_order['amount'],
            'currency':          rp_order.get('currency', PAYMENT_CURRENCY),
            'key_id':            self.key_id,
        }

    def verify_payment(self, razorpay_order_id: str, razorpay_payment_id: str, razorpay_signature: str) -> bool:
        if not self.client:
            raise PaymentGatewayError("Razorpay is not configured")
        try:
            self.client.utility.verify_payment_signature({
                'razorpay_order_id':   razorpay_order_id,
                'razorpay_payment_id': razorpay_payment_id,
                'razorpay_signature':  razorpay_signature,
            })
        except SignatureVerificationError:
            logger.warning("Payment signature mismatch", razorpay_order_id=razorpay_order_id)
            return False
        return True


_payments: Optional[RazorpayPaymentService] = None


def get_payments() -> RazorpayPaymentService:
    global _payments
    if _payments is None:
        _payments = RazorpayPaymentService()
    return _payments
