from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import stripe

from shared.config import get_required_setting

logger = logging.getLogger(__name__)


def _get_stripe_client():
    secret_key = get_required_setting("STRIPE_SECRET_KEY")
    stripe.api_key = secret_key
    return stripe


def to_minor_units(amount: float) -> int:
    return int(round(float(amount or 0) * 100))


class StripePaymentGateway:
    """Invoices and charges billing cycles through Stripe."""

    def __init__(self, stripe_client=None):
        self._stripe = stripe_client

    @property
    def client(self):
        if self._stripe is None:
            self._stripe = _get_stripe_client()
        return self._stripe

    def generate_invoice(
        self,
        *,
        stripe_customer_id: str,
        amount: float,
        currency: str,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        client = self.client
        client.InvoiceItem.create(
            customer=stripe_customer_id,
            amount=to_minor_units(amount),
            currency=(currency or "USD").lower(),
            description=description,
            metadata=metadata or {},
        )
        invoice = client.Invoice.create(
            customer=stripe_customer_id,
            collection_method="charge_automatically",
            auto_advance=False,
            pending_invoice_items_behavior="include",
            metadata=metadata or {},
        )
        finalized = client.Invoice.finalize_invoice(invoice.id)
        logger.info("Stripe invoice %s finalized for customer %s", finalized.id, stripe_customer_id)
        return {"invoiceId": finalized.id, "status": finalized.status, "amountDue": finalized.amount_due}

    def process_payment(self, *, invoice_id: str, payment_method_id: str) -> Dict[str, Any]:
        """Pay a finalized invoice with a stored payment method, confirming its PaymentIntent off-session."""
        invoice = self.client.Invoice.pay(invoice_id, payment_method=payment_method_id, off_session=True)
        if invoice.status != "paid":
            raise RuntimeError(f"Invoice {invoice_id} payment not completed (status={invoice.status})")
        payment_intent = getattr(invoice, "payment_intent", None)
        payment_id = payment_intent if isinstance(payment_intent, str) else getattr(payment_intent, "id", None)
        return {
            "paymentId": payment_id or invoice.id,
            "status": invoice.status,
            "receiptUrl": getattr(invoice, "hosted_invoice_url", None),
        }
