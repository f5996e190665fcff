"""
PhaJay Integration Module for UniJobs
BCEL One QR payment gateway (Laos)

This module requests payment QR codes from PhaJay and verifies the callbacks
it sends to the payment webhook. Each QR carries three free-form tags that
come back unchanged in the webhook body:

- tag1: paying user ID
- tag2: flow tag (topup, project_payout, order_payout, subscription)
- tag3: flow argument (credit count, project ID or order ID)

Configuration Required:
- PHAJAY_SECRET_KEY: Merchant secret key (without the $2a$10$ prefix)
- PHAJAY_QR_URL: QR generation endpoint (defaults to the sandbox endpoint)
- PHAJAY_WEBHOOK_SECRET: Shared secret for webhook signatures (optional)
"""

import os
import hashlib
import hmac
import random
import time
import requests
from typing import Dict, Optional, Any


class PhaJayConfig:
    """PhaJay configuration settings"""
    SANDBOX_QR_URL = "https://payment-gateway.phajay.co/v1/api/test/payment/generate-bcel-qr"
    KEY_PREFIX = "$2a$10$"

    def __init__(self):
        self.secret_key = os.environ.get('PHAJAY_SECRET_KEY', '')
        self.qr_url = os.environ.get('PHAJAY_QR_URL', self.SANDBOX_QR_URL)
        self.webhook_secret = os.environ.get('PHAJAY_WEBHOOK_SECRET', '')
        self.timeout = int(os.environ.get('PHAJAY_TIMEOUT', 30))

    @property
    def header_key(self) -> str:
        # PhaJay expects the bcrypt-style prefix in front of the merchant key
        return f"{self.KEY_PREFIX}{self.secret_key}"

    @property
    def is_configured(self) -> bool:
        return bool(self.secret_key)


class PhaJayClient:
    """
    PhaJay API Client for BCEL One QR payments

    Usage:
        client = PhaJayClient()
        if client.is_available():
            result = client.generate_qr(
                amount=50000,
                description="Top up 50 credits",
                tag1="12",
                tag2="topup",
                tag3="50"
            )
    """

    def __init__(self, config: Optional[PhaJayConfig] = None):
        self.config = config or PhaJayConfig()

    def is_available(self) -> bool:
        """Check if PhaJay is properly configured"""
        return self.config.is_configured

    def _make_request(self, payload: Dict[str, Any]) -> Dict:
        """POST a JSON payload to the QR endpoint"""
        headers = {
            'Content-Type': 'application/json',
            'secretKey': self.config.header_key
        }

        try:
            response = requests.post(
                self.config.qr_url,
                json=payload,
                headers=headers,
                timeout=self.config.timeout
            )
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as e:
            return {
                'success': False,
                'error': str(e),
                'error_code': 'REQUEST_FAILED'
            }
        except ValueError:
            return {
                'success': False,
                'error': 'Invalid response from payment gateway',
                'error_code': 'REQUEST_FAILED'
            }

    def generate_qr(
        self,
        amount: float,
        description: str,
        tag1: str,
        tag2: str,
        tag3: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Generate a BCEL One payment QR

        Args:
            amount: Amount in LAK
            description: Text shown to the payer
            tag1: Paying user ID
            tag2: Flow tag
            tag3: Flow argument (optional)

        Returns:
            Dict with qr_code, link and the gateway transaction_id, or error details
        """
        if not self.is_available():
            return {
                'success': False,
                'error': 'PhaJay is not configured. Please set PHAJAY_SECRET_KEY.',
                'error_code': 'NOT_CONFIGURED'
            }

        payload = {
            'amount': amount,
            'description': description,
            'tag1': tag1,
            'tag2': tag2,
            'tag3': tag3
        }

        result = self._make_request(payload)

        if result.get('qrCode') and result.get('transactionId'):
            return {
                'success': True,
                'qr_code': result.get('qrCode'),
                'link': result.get('link'),
                'transaction_id': result.get('transactionId')
            }

        return {
            'success': False,
            'error': result.get('message') or result.get('error') or 'Failed to generate QR',
            'error_code': result.get('error_code', 'QR_FAILED')
        }

    def verify_webhook_signature(self, raw_body: bytes, signature: str) -> bool:
        """
        Verify webhook signature from PhaJay

        Args:
            raw_body: Raw request body exactly as received
            signature: Hex digest from the X-PhaJay-Signature header

        Returns:
            True if signature is valid
        """
        if not self.config.webhook_secret:
            return True
        expected_signature = hmac.new(
            self.config.webhook_secret.encode('utf-8'),
            raw_body,
            hashlib.sha256
        ).hexdigest()
        return hmac.compare_digest(expected_signature, signature or '')


def get_phajay_client() -> PhaJayClient:
    """Get PhaJay client instance"""
    return PhaJayClient()


def generate_order_no() -> str:
    """Merchant-side order number attached to each QR"""
    return f"ORDER_{int(time.time() * 1000)}_{random.randint(0, 999999)}"
