import calendar
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func as sa_func

from shared.db import Subscription, SubscriptionPlan, UsageRecord
from shared.errors import ValidationFailedError

logger = logging.getLogger(__name__)

RESOURCE_TYPES = ["contacts", "storage_mb", "api_calls", "users", "emails", "sms"]

DEFAULT_PLAN_LIMITS = {
    "free": {"contacts": 250, "storage_mb": 100, "api_calls": 1000, "users": 2, "emails": 500, "sms": 0},
    "starter": {"contacts": 2500, "storage_mb": 1024, "api_calls": 10000, "users": 5, "emails": 5000, "sms": 250},
    "professional": {"contacts": 25000, "storage_mb": 10240, "api_calls": 100000, "users": 25, "emails": 50000, "sms": 2500},
    "enterprise": {"contacts": 0, "storage_mb": 102400, "api_calls": 0, "users": 0, "emails": 0, "sms": 25000},
}

ACTIVE_SUBSCRIPTION_STATUSES = {"active", "trial", "trialing"}
WARNING_PERCENT = 80.0


def add_months(value: datetime, months: int) -> datetime:
    month_index = (value.month - 1) + int(months)
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _start_of_day(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def compute_billing_cycle_window(anchor: datetime, now: datetime | None = None) -> tuple[datetime, datetime]:
    # Month cycles are date-to-date, not time-to-time.
    anchor_date = _start_of_day(anchor)
    reference = _start_of_day(now or datetime.utcnow())

    if anchor_date > reference:
        start = anchor_date
        return start, add_months(start, 1)

    months = (reference.year - anchor_date.year) * 12 + (reference.month - anchor_date.month)
    start = add_months(anchor_date, months)
    if start > reference:
        months -= 1
        start = add_months(anchor_date, months)

    end = add_months(start, 1)
    while end <= reference:
        start = end
        end = add_months(start, 1)
    return start, end


def get_active_subscription(db, company_id: str) -> Subscription | None:
    return (
        db.query(Subscription)
        .filter(Subscription.company_id == str(company_id))
        .filter(Subscription.status.in_(ACTIVE_SUBSCRIPTION_STATUSES))
        .order_by(Subscription.start_date.desc(), Subscription.id.desc())
        .first()
    )


def get_plan_limits(db, plan_id: str | None) -> Dict[str, float]:
    """Limits from the plan row when it declares them, else the built-in table. 0 means unlimited."""
    limits: Dict[str, float] = dict(DEFAULT_PLAN_LIMITS.get(str(plan_id or "").lower(), DEFAULT_PLAN_LIMITS["free"]))
    if plan_id:
        plan = db.query(SubscriptionPlan).filter(SubscriptionPlan.id == str(plan_id)).one_or_none()
        if plan and plan.limits_json:
            try:
                declared = json.loads(plan.limits_json)
            except (TypeError, ValueError):
                logger.warning("Ignoring malformed limits for plan %s", plan_id)
                declared = {}
            if isinstance(declared, dict):
                limits.update({key: value for key, value in declared.items() if key in RESOURCE_TYPES})
    return limits


def get_usage_totals(db, company_id: str, start: datetime, end: datetime) -> Dict[str, float]:
    rows = (
        db.query(UsageRecord.resource_type, sa_func.coalesce(sa_func.sum(UsageRecord.value), 0))
        .filter(UsageRecord.company_id == str(company_id))
        .filter(UsageRecord.recorded_at >= start)
        .filter(UsageRecord.recorded_at < end)
        .group_by(UsageRecord.resource_type)
        .all()
    )
    totals = {resource: 0.0 for resource in RESOURCE_TYPES}
    for resource_type, total in rows:
        totals[resource_type] = float(total or 0)
    return totals


def _current_window(db, company_id: str, now: datetime | None = None) -> tuple[Subscription | None, datetime, datetime]:
    subscription = get_active_subscription(db, company_id)
    reference = now or datetime.utcnow()
    anchor = subscription.start_date if subscription else reference.replace(day=1)
    start, end = compute_billing_cycle_window(anchor, reference)
    return subscription, start, end


def track_usage(
    db,
    *,
    tenant_id: str,
    company_id: str,
    resource_type: str,
    amount: float = 1,
    user_id: str | None = None,
    metadata: Optional[Dict[str, Any]] = None,
    now: datetime | None = None,
) -> bool:
    """
    Record resource usage for a company.

    The record is always written. Returns False when the amount pushes the
    company past its plan limit for the current billing window.
    """
    if resource_type not in RESOURCE_TYPES:
        raise ValidationFailedError(
            [{"field": "resourceType", "message": f"Unknown resource type {resource_type}", "rule": "enum"}]
        )
    reference = now or datetime.utcnow()
    subscription, start, end = _current_window(db, company_id, reference)
    limit = float(get_plan_limits(db, subscription.plan_id if subscription else None).get(resource_type, 0) or 0)
    current = get_usage_totals(db, company_id, start, end)[resource_type]
    details = dict(metadata or {})
    allowed = limit <= 0 or current + amount <= limit
    if not allowed:
        logger.warning("Usage limit exceeded for %s for company %s", resource_type, company_id)
        details.update({"limitExceeded": True, "limit": limit, "totalUsage": current + amount})
    db.add(
        UsageRecord(
            tenant_id=str(tenant_id),
            company_id=str(company_id),
            resource_type=resource_type,
            value=float(amount),
            user_id=user_id,
            metadata_json=json.dumps(details) if details else None,
            recorded_at=reference,
        )
    )
    db.commit()
    return allowed


def summarize_resource(current_usage: float, limit: float) -> Dict[str, Any]:
    if limit <= 0:
        return {
            "currentUsage": current_usage,
            "limit": -1,
            "percentUsed": 0,
            "remainingUsage": -1,
            "overageUsage": 0,
            "status": "normal",
        }
    percent_used = (current_usage / limit) * 100
    status = "normal"
    if percent_used >= 100:
        status = "exceeded"
    elif percent_used >= WARNING_PERCENT:
        status = "warning"
    return {
        "currentUsage": current_usage,
        "limit": limit,
        "percentUsed": percent_used,
        "remainingUsage": max(0.0, limit - current_usage),
        "overageUsage": max(0.0, current_usage - limit),
        "status": status,
    }


def get_usage_summary(db, company_id: str, now: datetime | None = None) -> Dict[str, Any]:
    subscription, start, end = _current_window(db, company_id, now)
    limits = get_plan_limits(db, subscription.plan_id if subscription else None)
    totals = get_usage_totals(db, company_id, start, end)
    resources = {
        resource: summarize_resource(totals.get(resource, 0.0), float(limits.get(resource, 0) or 0))
        for resource in RESOURCE_TYPES
    }
    limited = [item["percentUsed"] for item in resources.values() if item["limit"] > 0]
    return {
        "companyId": str(company_id),
        "tenantId": subscription.tenant_id if subscription else None,
        "planId": subscription.plan_id if subscription else None,
        "period": {"start": start.isoformat(), "end": end.isoformat(), "unit": "monthly"},
        "resources": resources,
        "totalUsagePercentage": sum(limited) / len(limited) if limited else 0,
        "lastUpdated": datetime.utcnow().isoformat(),
    }


def get_usage_history(
    db,
    company_id: str,
    resource_type: str,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int | None = None,
) -> List[Dict[str, Any]]:
    query = db.query(UsageRecord).filter(
        UsageRecord.company_id == str(company_id),
        UsageRecord.resource_type == resource_type,
    )
    if start:
        query = query.filter(UsageRecord.recorded_at >= start)
    if end:
        query = query.filter(UsageRecord.recorded_at <= end)
    query = query.order_by(UsageRecord.recorded_at.desc(), UsageRecord.id.desc())
    if limit:
        query = query.limit(max(1, int(limit)))
    return [
        {
            "id": record.id,
            "resourceType": record.resource_type,
            "value": record.value,
            "userId": record.user_id,
            "metadata": json.loads(record.metadata_json) if record.metadata_json else {},
            "recordedAt": record.recorded_at.isoformat() if record.recorded_at else None,
        }
        for record in query.all()
    ]
