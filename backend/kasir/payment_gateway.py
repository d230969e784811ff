# Overview: HTTP client for the Duitku payment gateway; request signing and callback verification.

"""
Duitku Payment Gateway Client

WHY: The payment orchestrator needs exactly three things from the provider:
a redirect URL for a new payment, a way to authenticate inbound callbacks,
and a status query for reconciliation. This client is constructed from app
config in create_app and passed explicitly to the orchestrator, so tests
substitute a double and no module-level instance exists.

SIGNATURES (provider contract, order matters):
- inquiry:  md5(merchantCode + merchantOrderId + paymentAmount + apiKey)
- callback: md5(merchantCode + amount + merchantOrderId + apiKey)
- status:   md5(merchantCode + merchantOrderId + apiKey)

FAILURE MODEL: create_payment / check_transaction_status never raise for
provider or transport problems; they return GatewayResult(success=False)
with an `error` dict. Timeouts are explicit (GATEWAY_TIMEOUT_SECONDS).
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

logger = logging.getLogger(__name__)

SANDBOX_BASE_URL = "https://sandbox.duitku.com/webapi/api/merchant"
PRODUCTION_BASE_URL = "https://passport.duitku.com/webapi/api/merchant"

RESULT_CODE_SUCCESS = "00"
RESULT_CODE_PENDING = "01"


def _md5(value: str) -> str:
    return hashlib.md5(value.encode("utf-8")).hexdigest()


def _preview(signature: str | None) -> str:
    return f"{signature[:10]}..." if signature else "NONE"


@dataclass
class GatewayResult:
    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: dict[str, Any] | None = None


class DuitkuClient:
    DEFAULT_PAYMENT_METHOD = "VC"  # Credit card; the hosted page offers the rest
    DEFAULT_PHONE = "081234567890"
    USER_AGENT = "Kasir-Backend/1.0"

    def __init__(
        self,
        merchant_code: str,
        api_key: str,
        *,
        base_url: str = SANDBOX_BASE_URL,
        callback_url: str | None = None,
        return_url: str | None = None,
        timeout: float = 30.0,
        status_timeout: float = 15.0,
        sandbox: bool = True,
        transport: httpx.BaseTransport | None = None,
    ):
        self.merchant_code = merchant_code
        self._api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.callback_url = callback_url
        self.return_url = return_url
        self.timeout = timeout
        self.status_timeout = status_timeout
        self.sandbox = sandbox
        self._transport = transport

    @classmethod
    def from_config(cls, config) -> "DuitkuClient":
        sandbox = bool(config.get("DUITKU_SANDBOX", True))
        base_url = config.get("DUITKU_BASE_URL") or (SANDBOX_BASE_URL if sandbox else PRODUCTION_BASE_URL)
        return cls(
            merchant_code=config["DUITKU_MERCHANT_CODE"],
            api_key=config["DUITKU_API_KEY"],
            base_url=base_url,
            callback_url=config.get("DUITKU_CALLBACK_URL"),
            return_url=config.get("DUITKU_RETURN_URL"),
            timeout=float(config.get("GATEWAY_TIMEOUT_SECONDS", 30)),
            status_timeout=float(config.get("GATEWAY_STATUS_TIMEOUT_SECONDS", 15)),
            sandbox=sandbox,
        )

    # =========================================================================
    # SIGNATURES
    # =========================================================================

    def generate_signature(self, merchant_order_id: str, payment_amount: int | str) -> str:
        """Signature for an outbound inquiry request."""
        return _md5(f"{self.merchant_code}{merchant_order_id}{payment_amount}{self._api_key}")

    def callback_signature(self, merchant_code: str, amount: str, merchant_order_id: str) -> str:
        """Signature the provider attaches to a callback for these fields."""
        return _md5(f"{merchant_code}{amount}{merchant_order_id}{self._api_key}")

    def verify_callback(self, merchant_code: str, amount: str, merchant_order_id: str, signature: str | None) -> bool:
        """
        Recompute the callback signature and compare in constant time.

        `amount` must be the exact string the provider sent; reformatting it
        changes the hash.
        """
        if not signature:
            logger.warning("Callback for %s carried no signature", merchant_order_id)
            return False

        expected = self.callback_signature(merchant_code, amount, merchant_order_id)
        is_valid = hmac.compare_digest(expected, str(signature).lower())
        logger.info(
            "Callback signature check order=%s received=%s valid=%s",
            merchant_order_id, _preview(signature), is_valid,
        )
        return is_valid

    # =========================================================================
    # API CALLS
    # =========================================================================

    def create_payment(
        self,
        *,
        merchant_order_id: str,
        payment_amount: int,
        product_detail: str,
        email: str,
        customer_name: str,
        phone_number: str | None = None,
        expiry_period: int = 1440,
        payment_method: str | None = None,
    ) -> GatewayResult:
        """
        Request a hosted payment page from the provider.

        Returns GatewayResult with data keys: payment_url, reference,
        payment_method, va_number, signature.
        """
        required = {
            "merchant_order_id": merchant_order_id,
            "payment_amount": payment_amount,
            "product_detail": product_detail,
            "email": email,
            "customer_name": customer_name,
        }
        missing = [key for key, value in required.items() if not value]
        if missing:
            return GatewayResult(False, error={"message": f"Missing required fields: {', '.join(missing)}"})

        signature = self.generate_signature(merchant_order_id, int(payment_amount))
        body = {
            "merchantCode": self.merchant_code,
            "paymentAmount": int(payment_amount),
            "paymentMethod": payment_method or self.DEFAULT_PAYMENT_METHOD,
            "merchantOrderId": merchant_order_id,
            "productDetail": product_detail,
            "customerVaName": customer_name,
            "email": email,
            "phoneNumber": phone_number or self.DEFAULT_PHONE,
            "callbackUrl": self.callback_url,
            "returnUrl": self.return_url,
            "signature": signature,
            "expiryPeriod": int(expiry_period),
        }

        logger.info(
            "Creating gateway payment order=%s amount=%s method=%s",
            merchant_order_id, body["paymentAmount"], body["paymentMethod"],
        )

        result = self._post("/v2/inquiry", body, timeout=self.timeout)
        if not result.success:
            return result

        response = result.data
        if response.get("statusCode") != RESULT_CODE_SUCCESS:
            logger.warning(
                "Gateway rejected inquiry order=%s code=%s message=%s",
                merchant_order_id, response.get("statusCode"), response.get("statusMessage"),
            )
            return GatewayResult(False, error={
                "message": f"Gateway error: {response.get('statusMessage') or 'unknown'}",
                "status_code": response.get("statusCode"),
            })

        if not response.get("paymentUrl"):
            return GatewayResult(False, error={"message": "Payment URL not generated by gateway"})

        va_number = response.get("vaNumber")
        return GatewayResult(True, data={
            "payment_url": response["paymentUrl"],
            "reference": response.get("reference"),
            "payment_method": "Virtual Account" if va_number else "Credit Card",
            "va_number": va_number,
            "signature": signature,
        })

    def check_transaction_status(self, merchant_order_id: str) -> GatewayResult:
        """
        Ask the provider for the current status of an order.

        Returns GatewayResult with data keys: result_code, amount, reference,
        status_message.
        """
        body = {
            "merchantCode": self.merchant_code,
            "merchantOrderId": merchant_order_id,
            "signature": _md5(f"{self.merchant_code}{merchant_order_id}{self._api_key}"),
        }
        result = self._post("/transactionStatus", body, timeout=self.status_timeout)
        if not result.success:
            return result

        response = result.data
        return GatewayResult(True, data={
            "result_code": response.get("statusCode"),
            "amount": response.get("amount"),
            "reference": response.get("reference"),
            "status_message": response.get("statusMessage"),
        })

    def _post(self, path: str, body: dict, *, timeout: float) -> GatewayResult:
        url = f"{self.base_url}{path}"
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": self.USER_AGENT,
        }
        try:
            with httpx.Client(timeout=timeout, transport=self._transport) as client:
                response = client.post(url, json=body, headers=headers)
                response.raise_for_status()
                payload = response.json()
        except httpx.TimeoutException:
            logger.error("Gateway timeout after %ss calling %s", timeout, path)
            return GatewayResult(False, error={"message": "Gateway timeout", "type": "timeout"})
        except httpx.HTTPStatusError as exc:
            logger.error("Gateway HTTP %s calling %s", exc.response.status_code, path)
            return GatewayResult(False, error={
                "message": f"Gateway HTTP {exc.response.status_code}",
                "type": "http_status",
                "body": exc.response.text[:500],
            })
        except httpx.HTTPError as exc:
            logger.error("Gateway transport error calling %s: %s", path, exc)
            return GatewayResult(False, error={"message": "Gateway unreachable", "type": "transport"})
        except ValueError:
            logger.error("Gateway returned a non-JSON body for %s", path)
            return GatewayResult(False, error={"message": "Invalid gateway response", "type": "decode"})

        if not isinstance(payload, dict):
            logger.error("Gateway returned a non-object JSON body for %s", path)
            return GatewayResult(False, error={"message": "Invalid gateway response", "type": "decode"})
        return GatewayResult(True, data=payload)
