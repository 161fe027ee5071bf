from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from shared.db import BillingCycle, Payment, PaymentCustomer, PaymentMethod, Subscription
from shared.errors import InvalidStateError, NotFoundError
from services.usage_service import add_months

logger = logging.getLogger(__name__)

BILLING_CYCLE_STATUSES = ["pending", "processing", "completed", "failed", "cancelled"]
FREQUENCY_MONTHS = {
    "monthly": 1,
    "quarterly": 3,
    "biannual": 6,
    "annual": 12,
}
GENERATABLE_SUBSCRIPTION_STATUSES = {"active", "trial", "trialing"}


def calculate_next_cycle_dates(reference: datetime, frequency: str | None) -> Dict[str, datetime]:
    months = FREQUENCY_MONTHS.get(str(frequency or "").lower(), 1)
    cycle_start = reference + timedelta(days=1)
    return {
        "cycleStart": cycle_start,
        "cycleEnd": add_months(reference, months),
        "dueDate": cycle_start,
    }


def _load_metadata(cycle: BillingCycle) -> Dict[str, Any]:
    if not cycle.metadata_json:
        return {}
    try:
        parsed = json.loads(cycle.metadata_json)
    except (TypeError, ValueError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_billing_cycle(cycle: BillingCycle) -> Dict[str, Any]:
    return {
        "id": cycle.id,
        "subscriptionId": cycle.subscription_id,
        "companyId": cycle.company_id,
        "tenantId": cycle.tenant_id,
        "cycleStartDate": _iso(cycle.cycle_start_date),
        "cycleEndDate": _iso(cycle.cycle_end_date),
        "dueDate": _iso(cycle.due_date),
        "amount": cycle.amount,
        "currency": cycle.currency,
        "status": cycle.status,
        "paymentAttempts": cycle.payment_attempts or 0,
        "lastPaymentAttempt": _iso(cycle.last_payment_attempt),
        "paymentMethodId": cycle.payment_method_id,
        "invoiceId": cycle.invoice_id,
        "metadata": _load_metadata(cycle),
        "createdAt": _iso(cycle.created_at),
        "updatedAt": _iso(cycle.updated_at),
    }


def create_billing_cycle(
    db,
    *,
    subscription_id: int,
    company_id: str,
    tenant_id: str,
    cycle_start_date: datetime,
    cycle_end_date: datetime,
    due_date: datetime,
    amount: float,
    currency: str = "USD",
    metadata: Optional[Dict[str, Any]] = None,
) -> BillingCycle:
    cycle = BillingCycle(
        subscription_id=subscription_id,
        company_id=company_id,
        tenant_id=tenant_id,
        cycle_start_date=cycle_start_date,
        cycle_end_date=cycle_end_date,
        due_date=due_date,
        amount=float(amount or 0),
        currency=currency or "USD",
        status="pending",
        payment_attempts=0,
        metadata_json=json.dumps(metadata or {}),
    )
    db.add(cycle)
    db.commit()
    db.refresh(cycle)
    return cycle


def get_billing_cycle(db, cycle_id: int, tenant_id: Optional[str] = None) -> Optional[BillingCycle]:
    query = db.query(BillingCycle).filter(BillingCycle.id == cycle_id)
    if tenant_id:
        query = query.filter(BillingCycle.tenant_id == str(tenant_id))
    return query.one_or_none()


def _require_cycle(db, cycle_id: int, tenant_id: Optional[str] = None) -> BillingCycle:
    cycle = get_billing_cycle(db, cycle_id, tenant_id)
    if cycle is None:
        raise NotFoundError(f"Billing cycle {cycle_id} not found")
    return cycle


def update_billing_cycle_status(
    db,
    cycle_id: int,
    status: str,
    *,
    payment_attempts: Optional[int] = None,
    last_payment_attempt: Optional[datetime] = None,
    payment_method_id: Optional[str] = None,
    invoice_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> BillingCycle:
    if status not in BILLING_CYCLE_STATUSES:
        raise InvalidStateError(f"Unknown billing cycle status {status}")
    cycle = _require_cycle(db, cycle_id)
    cycle.status = status
    if payment_attempts is not None:
        cycle.payment_attempts = payment_attempts
    if last_payment_attempt is not None:
        cycle.last_payment_attempt = last_payment_attempt
    if payment_method_id is not None:
        cycle.payment_method_id = payment_method_id
    if invoice_id is not None:
        cycle.invoice_id = invoice_id
    if metadata is not None:
        cycle.metadata_json = json.dumps(metadata)
    cycle.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(cycle)
    return cycle


def get_billing_cycles_for_subscription(db, subscription_id: int, tenant_id: Optional[str] = None) -> List[BillingCycle]:
    query = db.query(BillingCycle).filter(BillingCycle.subscription_id == subscription_id)
    if tenant_id:
        query = query.filter(BillingCycle.tenant_id == str(tenant_id))
    return query.order_by(BillingCycle.cycle_start_date.desc(), BillingCycle.id.desc()).all()


def get_upcoming_billing_cycles(
    db,
    company_id: str,
    count: int = 5,
    *,
    tenant_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> List[BillingCycle]:
    reference = now or datetime.utcnow()
    query = db.query(BillingCycle).filter(
        BillingCycle.company_id == str(company_id),
        BillingCycle.cycle_start_date >= reference,
    )
    if tenant_id:
        query = query.filter(BillingCycle.tenant_id == str(tenant_id))
    return query.order_by(BillingCycle.cycle_start_date.asc()).limit(max(1, int(count))).all()


def generate_billing_cycles(db, subscription_id: int, count: int = 1, tenant_id: Optional[str] = None) -> List[BillingCycle]:
    query = db.query(Subscription).filter(Subscription.id == subscription_id)
    if tenant_id:
        query = query.filter(Subscription.tenant_id == str(tenant_id))
    subscription = query.one_or_none()
    if subscription is None:
        raise NotFoundError(f"Subscription {subscription_id} not found")
    if subscription.status not in GENERATABLE_SUBSCRIPTION_STATUSES:
        raise InvalidStateError(f"Cannot generate billing cycles for subscription with status {subscription.status}")

    existing = get_billing_cycles_for_subscription(db, subscription.id)
    last_cycle_end = existing[0].cycle_end_date if existing else subscription.start_date

    created: List[BillingCycle] = []
    for _ in range(max(1, int(count))):
        dates = calculate_next_cycle_dates(last_cycle_end, subscription.billing_cycle)
        cycle = create_billing_cycle(
            db,
            subscription_id=subscription.id,
            company_id=subscription.company_id,
            tenant_id=subscription.tenant_id or subscription.company_id,
            cycle_start_date=dates["cycleStart"],
            cycle_end_date=dates["cycleEnd"],
            due_date=dates["dueDate"],
            amount=subscription.price,
            currency=subscription.currency or "USD",
            metadata={"planId": subscription.plan_id, "planName": subscription.plan_name},
        )
        created.append(cycle)
        last_cycle_end = dates["cycleEnd"]
    logger.info("Generated %s billing cycles for subscription %s", len(created), subscription.id)
    return created


def _default_payment_method(db, company_id: str) -> tuple[Optional[PaymentCustomer], Optional[PaymentMethod]]:
    customer = db.query(PaymentCustomer).filter(PaymentCustomer.company_id == str(company_id)).one_or_none()
    if customer is None:
        return None, None
    method = (
        db.query(PaymentMethod)
        .filter(PaymentMethod.customer_id == customer.id, PaymentMethod.is_default.is_(True))
        .first()
    )
    return customer, method


def _process_cycle(db, cycle: BillingCycle, gateway, now: datetime) -> bool:
    metadata = _load_metadata(cycle)
    cycle_id = cycle.id
    try:
        update_billing_cycle_status(
            db,
            cycle_id,
            "processing",
            payment_attempts=(cycle.payment_attempts or 0) + 1,
            last_payment_attempt=now,
        )

        subscription = db.query(Subscription).filter(Subscription.id == cycle.subscription_id).one_or_none()
        if subscription is None:
            update_billing_cycle_status(db, cycle_id, "failed", metadata={**metadata, "error": "Subscription not found"})
            return False
        if subscription.status != "active":
            update_billing_cycle_status(
                db,
                cycle_id,
                "cancelled",
                metadata={**metadata, "reason": f"Subscription status is {subscription.status}"},
            )
            return False

        customer, method = _default_payment_method(db, cycle.company_id)
        if customer is None:
            update_billing_cycle_status(db, cycle_id, "failed", metadata={**metadata, "error": "Customer not found"})
            return False
        if method is None:
            update_billing_cycle_status(
                db, cycle_id, "failed", metadata={**metadata, "error": "No default payment method found"}
            )
            return False

        description = (
            f"Subscription billing for period {cycle.cycle_start_date.date().isoformat()} "
            f"to {cycle.cycle_end_date.date().isoformat()}"
        )
        invoice = gateway.generate_invoice(
            stripe_customer_id=customer.stripe_customer_id,
            amount=cycle.amount,
            currency=cycle.currency,
            description=description,
            metadata={"billingCycleId": str(cycle_id), "subscriptionId": str(cycle.subscription_id)},
        )
        payment = gateway.process_payment(
            invoice_id=invoice["invoiceId"],
            payment_method_id=method.stripe_payment_method_id,
        )
        db.add(
            Payment(
                billing_cycle_id=cycle_id,
                subscription_id=cycle.subscription_id,
                tenant_id=cycle.tenant_id,
                stripe_invoice_id=invoice["invoiceId"],
                stripe_payment_intent_id=payment.get("paymentId"),
                amount=cycle.amount,
                currency=cycle.currency,
                status="succeeded",
                receipt_url=payment.get("receiptUrl"),
            )
        )
        update_billing_cycle_status(
            db,
            cycle_id,
            "completed",
            invoice_id=invoice["invoiceId"],
            payment_method_id=method.stripe_payment_method_id,
            metadata={**metadata, "paymentId": payment.get("paymentId"), "receiptUrl": payment.get("receiptUrl")},
        )
        return True
    except Exception as exc:  # pylint: disable=broad-except
        logger.exception("Error processing billing cycle %s: %s", cycle_id, exc)
        db.rollback()
        update_billing_cycle_status(db, cycle_id, "failed", metadata={**metadata, "error": str(exc) or "Unknown error"})
        return False


def process_pending_billing_cycles(db, count: int = 10, *, gateway=None, now: Optional[datetime] = None) -> List[int]:
    """Charge pending cycles that are due, oldest first; returns the ids that completed."""
    if gateway is None:
        from services.payment_gateway import StripePaymentGateway

        gateway = StripePaymentGateway()
    reference = now or datetime.utcnow()
    due = (
        db.query(BillingCycle)
        .filter(BillingCycle.status == "pending", BillingCycle.due_date <= reference)
        .order_by(BillingCycle.due_date.asc(), BillingCycle.id.asc())
        .limit(max(1, int(count)))
        .all()
    )
    processed: List[int] = []
    for cycle in due:
        if _process_cycle(db, cycle, gateway, reference):
            processed.append(cycle.id)
    if due:
        logger.info("Processed %s of %s due billing cycles", len(processed), len(due))
    return processed


def retry_billing_cycle(db, cycle_id: int, *, tenant_id: Optional[str] = None, gateway=None) -> bool:
    cycle = _require_cycle(db, cycle_id, tenant_id)
    if cycle.status != "failed":
        raise InvalidStateError(f"Cannot retry billing cycle with status {cycle.status}")
    if gateway is None:
        from services.payment_gateway import StripePaymentGateway

        gateway = StripePaymentGateway()
    cycle = update_billing_cycle_status(db, cycle_id, "pending")
    return _process_cycle(db, cycle, gateway, datetime.utcnow())


def cancel_billing_cycle(db, cycle_id: int, reason: str, *, tenant_id: Optional[str] = None) -> BillingCycle:
    cycle = _require_cycle(db, cycle_id, tenant_id)
    if cycle.status != "pending":
        raise InvalidStateError(f"Cannot cancel billing cycle with status {cycle.status}")
    metadata = _load_metadata(cycle)
    return update_billing_cycle_status(
        db,
        cycle_id,
        "cancelled",
        metadata={**metadata, "cancellationReason": reason, "cancelledAt": datetime.utcnow().isoformat()},
    )


def get_current_billing_cycle(
    db,
    subscription_id: int,
    *,
    tenant_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[BillingCycle]:
    reference = now or datetime.utcnow()
    query = db.query(BillingCycle).filter(
        BillingCycle.subscription_id == subscription_id,
        BillingCycle.cycle_start_date <= reference,
        BillingCycle.cycle_end_date >= reference,
    )
    if tenant_id:
        query = query.filter(BillingCycle.tenant_id == str(tenant_id))
    return query.order_by(BillingCycle.cycle_start_date.desc()).first()
