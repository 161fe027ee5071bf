"""
Subscription analytics over the company subscriptions table.

Metrics, trends, churn analysis and revenue forecasts are computed in Python
from the subscription rows; reports are persisted as JSON in ``analytics_reports``.
"""
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from shared.db import AnalyticsReport, Subscription
from shared.errors import NotFoundError, ValidationFailedError
from services import usage_service
from services.usage_service import add_months

logger = logging.getLogger(__name__)

PERIODS = ["daily", "weekly", "monthly", "quarterly", "yearly"]
REPORT_TYPES = ["overview", "revenue", "usage", "churn", "forecast", "custom"]
TRIAL_STATUSES = {"trial", "trialing"}
TREND_SERIES = ["activeSubscriptions", "trialSubscriptions", "revenue", "newSubscriptions", "churnRate"]
TENURE_BUCKETS = ["0-30 days", "31-90 days", "91-180 days", "181-365 days", "365+ days"]

CHURN_THRESHOLD = 0.05
CONVERSION_THRESHOLD = 0.3
USAGE_ALERT_PERCENT = 90


def _subscriptions(db, company_id: Optional[str] = None):
    query = db.query(Subscription)
    if company_id:
        query = query.filter(Subscription.company_id == str(company_id))
    return query


def _check_period(period: str) -> str:
    if period not in PERIODS:
        raise ValidationFailedError(
            [{"field": "period", "message": f"Value must be one of: {', '.join(PERIODS)}", "rule": "enum"}]
        )
    return period


def generate_subscription_metrics(db, period_start: datetime, period_end: datetime, company_id: Optional[str] = None) -> Dict[str, Any]:
    rows = (
        _subscriptions(db, company_id)
        .filter(Subscription.start_date <= period_end)
        .order_by(Subscription.start_date.desc())
        .all()
    )

    active = trial = cancelled = expired = 0
    total_revenue = 0.0
    trial_to_active = trial_to_inactive = 0
    renewals = non_renewals = 0
    plan_counts: Dict[str, Dict[str, Any]] = {}

    for sub in rows:
        if sub.status == "cancelled" and sub.cancellation_date and sub.cancellation_date < period_start:
            continue

        if sub.status == "active":
            active += 1
            if not sub.is_in_trial:
                total_revenue += sub.price or 0
            if sub.previous_subscription_id:
                renewals += 1
        elif sub.status in TRIAL_STATUSES:
            trial += 1
        elif sub.status == "cancelled":
            cancelled += 1
            if sub.was_in_trial:
                trial_to_inactive += 1
            else:
                non_renewals += 1
        elif sub.status == "expired":
            expired += 1
            non_renewals += 1

        if sub.plan_id:
            entry = plan_counts.setdefault(sub.plan_id, {"count": 0, "name": sub.plan_name or "Unknown Plan"})
            entry["count"] += 1

        if sub.was_in_trial and sub.status == "active":
            trial_to_active += 1

    total = active + trial + cancelled + expired
    conversions = trial_to_active + trial_to_inactive
    renewal_base = renewals + non_renewals
    plan_total = sum(entry["count"] for entry in plan_counts.values())
    popular_plans = sorted(
        (
            {
                "planId": plan_id,
                "planName": entry["name"],
                "count": entry["count"],
                "percentageOfTotal": (entry["count"] / plan_total) * 100 if plan_total else 0,
            }
            for plan_id, entry in plan_counts.items()
        ),
        key=lambda item: item["count"],
        reverse=True,
    )

    usage_metrics: Dict[str, Any] = {}
    if company_id:
        summary = usage_service.get_usage_summary(db, company_id, period_end)
        for resource_type, data in summary["resources"].items():
            usage_metrics[resource_type] = {
                "totalUsage": data["currentUsage"],
                "averagePerSubscription": data["currentUsage"] / (active or 1),
                "percentOfLimit": data["percentUsed"],
            }

    return {
        "activeSubscriptions": active,
        "trialSubscriptions": trial,
        "cancelledSubscriptions": cancelled,
        "expiredSubscriptions": expired,
        "totalRevenue": total_revenue,
        "averageRevenuePerSubscription": total_revenue / active if active else 0,
        "conversionRate": trial_to_active / conversions if conversions else 0,
        "churnRate": (cancelled + expired) / (total or 1),
        "renewalRate": renewals / renewal_base if renewal_base else 0,
        "popularPlans": popular_plans,
        "usageMetrics": usage_metrics,
    }


def _shift(value: datetime, period: str, steps: int) -> datetime:
    if period == "daily":
        return value + timedelta(days=steps)
    if period == "weekly":
        return value + timedelta(days=7 * steps)
    if period == "monthly":
        return add_months(value, steps)
    if period == "quarterly":
        return add_months(value, 3 * steps)
    return add_months(value, 12 * steps)


def _label(value: datetime, period: str) -> str:
    if period == "daily":
        return value.date().isoformat()
    if period == "monthly":
        return value.strftime("%b %Y")
    if period == "quarterly":
        return f"Q{(value.month - 1) // 3 + 1} {value.year}"
    return str(value.year)


def count_new_subscriptions(db, start: datetime, end: datetime, company_id: Optional[str] = None) -> int:
    return (
        _subscriptions(db, company_id)
        .filter(Subscription.start_date >= start, Subscription.start_date <= end)
        .count()
    )


def _percent_change(values: List[float]) -> float:
    current, previous = values[-1], values[-2]
    if previous != 0:
        return ((current - previous) / previous) * 100
    return 100 if current > 0 else 0


def generate_subscription_trends(
    db,
    period: str,
    period_count: int = 6,
    end_date: Optional[datetime] = None,
    company_id: Optional[str] = None,
) -> Dict[str, Any]:
    _check_period(period)
    end_date = end_date or datetime.utcnow()
    count = max(1, int(period_count))
    time_points: List[str] = []
    series: Dict[str, List[float]] = {name: [] for name in TREND_SERIES}

    for offset in range(count - 1, -1, -1):
        window_end = _shift(end_date, period, -offset)
        window_start = _shift(window_end, period, -1)
        if period == "weekly":
            time_points.append(f"Week {count - offset}")
        else:
            time_points.append(_label(window_end, period))

        metrics = generate_subscription_metrics(db, window_start, window_end, company_id)
        series["activeSubscriptions"].append(metrics["activeSubscriptions"])
        series["trialSubscriptions"].append(metrics["trialSubscriptions"])
        series["revenue"].append(metrics["totalRevenue"])
        series["newSubscriptions"].append(count_new_subscriptions(db, window_start, window_end, company_id))
        series["churnRate"].append(metrics["churnRate"] * 100)

    compare = {name: _percent_change(values) for name, values in series.items() if len(values) >= 2}
    return {
        "period": period,
        "timePoints": time_points,
        "metrics": series,
        "compareWithPrevious": compare,
    }


def _tenure_bucket(days: int) -> str:
    if days <= 30:
        return "0-30 days"
    if days <= 90:
        return "31-90 days"
    if days <= 180:
        return "91-180 days"
    if days <= 365:
        return "181-365 days"
    return "365+ days"


def generate_churn_analysis(db, period_start: datetime, period_end: datetime, company_id: Optional[str] = None) -> Dict[str, Any]:
    cancelled = (
        _subscriptions(db, company_id)
        .filter(
            Subscription.status == "cancelled",
            Subscription.cancellation_date >= period_start,
            Subscription.cancellation_date <= period_end,
        )
        .all()
    )
    expired = (
        _subscriptions(db, company_id)
        .filter(
            Subscription.status == "expired",
            Subscription.end_date >= period_start,
            Subscription.end_date <= period_end,
        )
        .all()
    )
    churned = cancelled + expired
    active = (
        _subscriptions(db, company_id)
        .filter(Subscription.status == "active", Subscription.start_date <= period_end)
        .all()
    )
    total = len(active) + len(churned)

    by_plan: Dict[str, Dict[str, Any]] = {}
    reasons: Dict[str, int] = {}
    by_tenure = {bucket: 0 for bucket in TENURE_BUCKETS}
    for sub in churned:
        if sub.plan_id:
            entry = by_plan.setdefault(sub.plan_id, {"count": 0, "name": sub.plan_name or "Unknown Plan"})
            entry["count"] += 1
        if sub.cancellation_reason:
            reasons[sub.cancellation_reason] = reasons.get(sub.cancellation_reason, 0) + 1
        ended = sub.cancellation_date or sub.end_date or datetime.utcnow()
        by_tenure[_tenure_bucket((ended - sub.start_date).days)] += 1

    active_by_plan: Dict[str, int] = {}
    for sub in active:
        if sub.plan_id:
            active_by_plan[sub.plan_id] = active_by_plan.get(sub.plan_id, 0) + 1

    churn_by_plan = sorted(
        (
            {
                "planId": plan_id,
                "planName": entry["name"],
                "churnCount": entry["count"],
                "churnRate": entry["count"] / (active_by_plan.get(plan_id, 0) + entry["count"]),
            }
            for plan_id, entry in by_plan.items()
        ),
        key=lambda item: item["churnCount"],
        reverse=True,
    )
    reason_total = sum(reasons.values())
    churn_reasons = sorted(
        (
            {"reason": reason, "count": count, "percentage": (count / reason_total) * 100 if reason_total else 0}
            for reason, count in reasons.items()
        ),
        key=lambda item: item["count"],
        reverse=True,
    )

    retention_curve = []
    churned_so_far = 0
    for month, bucket in zip((1, 3, 6, 12), TENURE_BUCKETS):
        churned_so_far += by_tenure[bucket]
        retention_curve.append({"month": month, "retentionRate": 1 - (churned_so_far / total) if total else 1})

    return {
        "overallChurnRate": len(churned) / total if total else 0,
        "churnByPlan": churn_by_plan,
        "churnReasons": churn_reasons,
        "churnByTenure": [
            {"tenureRange": bucket, "churnCount": count, "churnRate": count / total if total else 0}
            for bucket, count in by_tenure.items()
        ],
        "retentionCurve": retention_curve,
    }


def _average(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0


def generate_revenue_forecast(
    db,
    period: str,
    period_count: int = 6,
    company_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    reference = now or datetime.utcnow()
    history = generate_subscription_trends(db, period, period_count, reference, company_id)
    revenue = history["metrics"]["revenue"]
    subscriptions = history["metrics"]["activeSubscriptions"]

    revenue_growth = _average(
        [(revenue[i] - revenue[i - 1]) / revenue[i - 1] for i in range(1, len(revenue)) if revenue[i - 1] > 0]
    )
    subscription_growth = _average(
        [
            (subscriptions[i] - subscriptions[i - 1]) / subscriptions[i - 1]
            for i in range(1, len(subscriptions))
            if subscriptions[i - 1] > 0
        ]
    )
    latest_revenue = revenue[-1]
    latest_subscriptions = subscriptions[-1]
    churn_rate = history["metrics"]["churnRate"][-1] / 100
    new_rate = max(0, subscription_growth + churn_rate)
    arps = latest_revenue / latest_subscriptions if latest_subscriptions > 0 else 0
    volatility = max(abs(revenue_growth), abs(subscription_growth), 0.1)

    labels: List[str] = []
    projected_subscriptions: List[int] = []
    projected_revenue: List[float] = []
    lower: List[float] = []
    upper: List[float] = []
    previous = latest_subscriptions
    for index in range(max(1, int(period_count))):
        point = _shift(reference, period, index + 1)
        labels.append(f"Week {index + 1}" if period == "weekly" else _label(point, period))
        projected = max(0, round(previous * (1 + new_rate - churn_rate)))
        projected_subscriptions.append(projected)
        amount = max(0, round(projected * arps * (1 + revenue_growth) * 100) / 100)
        projected_revenue.append(amount)
        lower.append(max(0, amount * (1 - volatility)))
        upper.append(amount * (1 + volatility))
        previous = projected

    return {
        "period": period,
        "timePeriods": labels,
        "projectedRevenue": projected_revenue,
        "projectedSubscriptions": projected_subscriptions,
        "confidenceInterval": {"lower": lower, "upper": upper},
        "assumptions": {
            "churnRate": churn_rate,
            "conversionRate": 0,
            "newSubscriptionRate": subscription_growth + churn_rate,
        },
    }


def build_recommendations(metrics: Dict[str, Any]) -> List[str]:
    recommendations = []
    if metrics["churnRate"] > CHURN_THRESHOLD:
        recommendations.append(
            "Churn rate is above target threshold. Consider implementing retention strategies "
            "such as loyalty programs or product improvements."
        )
    if metrics["conversionRate"] < CONVERSION_THRESHOLD:
        recommendations.append(
            "Trial conversion rate is below target. Review onboarding experience and consider "
            "extending trial period or adding trial-specific features."
        )
    for resource_type, data in metrics["usageMetrics"].items():
        if data["percentOfLimit"] > USAGE_ALERT_PERCENT:
            recommendations.append(
                f"{resource_type} usage is approaching limit ({data['percentOfLimit']:.0f}%). "
                "Consider upgrading subscription plans or optimizing resource usage."
            )
    return recommendations


def generate_analytics_report(
    db,
    report_type: str,
    period_start: datetime,
    period_end: datetime,
    company_id: Optional[str] = None,
) -> int:
    if report_type not in REPORT_TYPES:
        raise ValidationFailedError(
            [{"field": "reportType", "message": f"Value must be one of: {', '.join(REPORT_TYPES)}", "rule": "enum"}]
        )
    metrics = generate_subscription_metrics(db, period_start, period_end, company_id)
    trends = forecast = churn = None
    if report_type in {"overview", "revenue", "forecast"}:
        trends = [generate_subscription_trends(db, "monthly", 6, period_end, company_id)]
        if report_type in {"overview", "forecast"}:
            forecast = generate_revenue_forecast(db, "monthly", 6, company_id)
    if report_type in {"overview", "churn"}:
        churn = generate_churn_analysis(db, period_start, period_end, company_id)

    payload = {
        "reportType": report_type,
        "companyId": company_id,
        "periodStart": period_start.isoformat(),
        "periodEnd": period_end.isoformat(),
        "metrics": metrics,
        "trends": trends,
        "forecast": forecast,
        "churnAnalysis": churn,
        "recommendations": build_recommendations(metrics),
    }
    report = AnalyticsReport(
        company_id=company_id,
        report_type=report_type,
        period_start=period_start,
        period_end=period_end,
        payload_json=json.dumps(payload),
    )
    db.add(report)
    db.commit()
    db.refresh(report)
    logger.info("Analytics report %s (%s) generated", report.id, report_type)
    return report.id


def get_analytics_report(db, report_id: int, company_id: Optional[str] = None) -> Dict[str, Any]:
    query = db.query(AnalyticsReport).filter(AnalyticsReport.id == report_id)
    if company_id:
        query = query.filter(AnalyticsReport.company_id == str(company_id))
    report = query.one_or_none()
    if report is None:
        raise NotFoundError(f"Analytics report {report_id} not found")
    return {
        "reportId": report.id,
        "generatedAt": report.generated_at.isoformat() if report.generated_at else None,
        **json.loads(report.payload_json),
    }
