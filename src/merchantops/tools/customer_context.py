"""Unified customer view across Shopify, Salesforce, Klaviyo and Cin7.

Platform fetchers return deterministic mock data keyed by the email address,
shaped like the respective platform APIs. The summary, key metrics,
recommendations and alerts are computed here so the model never has to do
arithmetic on raw platform data.
"""

import hashlib
import logging
import random
import time
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List

from ..models import ToolParameter, utc_timestamp
from .base import Tool

logger = logging.getLogger(__name__)

EMAIL_PATTERN = r"^[\w+\-.]+@[A-Za-z\d\-]+(\.[A-Za-z\d\-]+)*\.[A-Za-z]+$"

HIGH_VALUE_LTV = 2000
HIGH_ENGAGEMENT_SCORE = 7
DORMANT_AFTER_DAYS = 60
STALE_CASE_DAYS = 7

# Reference profile for the demo customer; every other email gets seeded values.
_KNOWN_PROFILES: Dict[str, Dict[str, Any]] = {
    "jane@example.com": {
        "first_name": "Jane",
        "last_name": "Doe",
        "lifetime_value": 2450.50,
        "total_orders": 12,
        "average_order_value": 204.21,
        "last_order_days_ago": 15,
        "last_order_total": 125.99,
        "last_order_items": 3,
        "tenure_years": 2,
        "tags": ["VIP", "repeat_customer"],
        "account_tier": "Gold",
        "open_cases": 1,
        "total_cases": 5,
        "case_priority": "Medium",
        "case_days_open": 3,
        "case_subject": "Product inquiry about bulk pricing",
        "account_manager": "Sarah Johnson",
        "engagement_score": 8.5,
        "open_rate": 0.42,
        "click_rate": 0.15,
        "churn_risk": "low",
        "predicted_clv": 3200.00,
        "invoices": 8,
        "invoiced_amount": 1890.75,
    }
}


def _rng(email: str, salt: str) -> random.Random:
    digest = hashlib.sha256(f"{salt}:{email.lower()}".encode("utf-8")).hexdigest()
    return random.Random(int(digest[:16], 16))


def _mock_id(email: str, prefix: str) -> str:
    return f"{prefix}_{hashlib.sha256(f'{prefix}:{email.lower()}'.encode('utf-8')).hexdigest()[:8]}"


def _profile(email: str) -> Dict[str, Any]:
    known = _KNOWN_PROFILES.get(email.lower())
    if known is not None:
        return known

    rng = _rng(email, "profile")
    local = email.split("@", 1)[0]
    parts = [p for p in local.replace("_", ".").replace("-", ".").split(".") if p]
    first = parts[0].capitalize() if parts else "Customer"
    last = parts[1].capitalize() if len(parts) > 1 else ""
    total_orders = rng.randint(1, 30)
    average = round(rng.uniform(40, 320), 2)
    open_cases = rng.choice([0, 0, 1, 2])
    return {
        "first_name": first,
        "last_name": last,
        "lifetime_value": round(total_orders * average, 2),
        "total_orders": total_orders,
        "average_order_value": average,
        "last_order_days_ago": rng.randint(1, 120),
        "last_order_total": round(rng.uniform(20, 400), 2),
        "last_order_items": rng.randint(1, 6),
        "tenure_years": rng.randint(1, 6),
        "tags": rng.choice([["repeat_customer"], ["VIP", "repeat_customer"], []]),
        "account_tier": rng.choice(["Bronze", "Silver", "Gold", "Platinum"]),
        "open_cases": open_cases,
        "total_cases": open_cases + rng.randint(0, 6),
        "case_priority": rng.choice(["Low", "Medium", "High"]),
        "case_days_open": rng.randint(1, 14),
        "case_subject": rng.choice(
            ["Shipping delay", "Damaged item on arrival", "Question about invoice"]
        ),
        "account_manager": rng.choice(["Sarah Johnson", "Miguel Torres", "Priya Raman"]),
        "engagement_score": round(rng.uniform(1, 10), 1),
        "open_rate": round(rng.uniform(0.05, 0.6), 2),
        "click_rate": round(rng.uniform(0.01, 0.2), 2),
        "churn_risk": rng.choice(["low", "medium", "high"]),
        "predicted_clv": round(rng.uniform(200, 5000), 2),
        "invoices": rng.randint(0, 20),
        "invoiced_amount": round(rng.uniform(0, 4000), 2),
    }


def fetch_shopify_data(email: str) -> Dict[str, Any]:
    p = _profile(email)
    now = datetime.now(timezone.utc)
    since = date.today() - timedelta(days=365 * p["tenure_years"])
    return {
        "customer_id": _mock_id(email, "shopify"),
        "first_name": p["first_name"],
        "last_name": p["last_name"],
        "full_name": f"{p['first_name']} {p['last_name']}".strip(),
        "lifetime_value": p["lifetime_value"],
        "total_orders": p["total_orders"],
        "average_order_value": p["average_order_value"],
        "last_order": {
            "id": _mock_id(email, "order"),
            "date": (now - timedelta(days=p["last_order_days_ago"])).isoformat(),
            "total": p["last_order_total"],
            "status": "fulfilled",
            "line_items_count": p["last_order_items"],
        },
        "customer_since": since.isoformat(),
        "tenure_days": (date.today() - since).days,
        "tags": list(p["tags"]),
        "accepts_marketing": True,
    }


def fetch_salesforce_data(email: str) -> Dict[str, Any]:
    p = _profile(email)
    now = datetime.now(timezone.utc)
    recent_cases = []
    if p["open_cases"]:
        recent_cases.append(
            {
                "case_number": f"CASE-{_rng(email, 'case').randint(1000, 9999)}",
                "status": "In Progress",
                "priority": p["case_priority"],
                "subject": p["case_subject"],
                "created_at": (now - timedelta(days=p["case_days_open"])).isoformat(),
                "days_open": p["case_days_open"],
            }
        )
    return {
        "contact_id": _mock_id(email, "sf_contact"),
        "account_id": _mock_id(email, "sf_account"),
        "crm_status": "Active Customer",
        "account_tier": p["account_tier"],
        "open_cases": p["open_cases"],
        "total_cases": p["total_cases"],
        "recent_cases": recent_cases,
        "account_manager": {"name": p["account_manager"]},
    }


def fetch_klaviyo_data(email: str) -> Dict[str, Any]:
    p = _profile(email)
    return {
        "profile_id": _mock_id(email, "klaviyo"),
        "subscribed": True,
        "email_engagement": {
            "engagement_score": p["engagement_score"],
            "avg_open_rate": p["open_rate"],
            "avg_click_rate": p["click_rate"],
        },
        "predicted_next_order_date": (date.today() + timedelta(days=12)).isoformat(),
        "predicted_clv": p["predicted_clv"],
        "churn_risk": p["churn_risk"],
    }


def fetch_cin7_data(email: str) -> Dict[str, Any]:
    p = _profile(email)
    return {
        "total_invoices": p["invoices"],
        "total_invoiced_amount": p["invoiced_amount"],
        "pending_shipments": [],
        "backorders": [],
        "on_time_delivery_rate": 0.95,
    }


def days_since_last_order(shopify: Dict[str, Any] | None) -> int | None:
    last_order = (shopify or {}).get("last_order") or {}
    if not last_order.get("date"):
        return None
    try:
        placed = datetime.fromisoformat(last_order["date"])
    except ValueError:
        return None
    return (datetime.now(timezone.utc) - placed).days


def build_summary(
    shopify: Dict[str, Any] | None,
    salesforce: Dict[str, Any] | None,
    klaviyo: Dict[str, Any] | None,
) -> str:
    if shopify is None and salesforce is None:
        return "No customer data found across any platform."

    paragraphs: List[str] = []
    if shopify:
        sentence = (
            f"{shopify['full_name']} has been a customer since {shopify['customer_since']} "
            f"({shopify['tenure_days']} days). Their lifetime value is "
            f"${shopify['lifetime_value']:.2f} across {shopify['total_orders']} orders "
            f"(average order: ${shopify['average_order_value']:.2f})."
        )
        if "VIP" in shopify.get("tags", []):
            sentence += " They are tagged as VIP."
        paragraphs.append(sentence)

        days = days_since_last_order(shopify)
        if days is not None:
            last = shopify["last_order"]
            paragraphs.append(
                f"Last order was {days} days ago ({last['status']}, ${last['total']:.2f})."
            )

    if salesforce:
        crm_note = f"CRM status: {salesforce['crm_status']} ({salesforce['account_tier']} tier)."
        manager = (salesforce.get("account_manager") or {}).get("name")
        if manager:
            crm_note += f" Account manager: {manager}."
        paragraphs.append(crm_note)
        if salesforce.get("open_cases"):
            paragraphs.append(
                f"{salesforce['open_cases']} open support case(s) requiring attention."
            )

    if klaviyo:
        engagement = klaviyo["email_engagement"]
        score = engagement["engagement_score"]
        sentence = (
            f"Email engagement is {'strong' if score >= HIGH_ENGAGEMENT_SCORE else 'moderate'} "
            f"(score: {score}/10, {round(engagement['avg_open_rate'] * 100)}% open rate). "
            f"Predicted next purchase: {klaviyo['predicted_next_order_date']}."
        )
        if klaviyo.get("churn_risk") == "high":
            sentence += " High churn risk detected."
        paragraphs.append(sentence)

    return "\n\n".join(paragraphs)


def build_key_metrics(
    shopify: Dict[str, Any] | None,
    salesforce: Dict[str, Any] | None,
    klaviyo: Dict[str, Any] | None,
) -> Dict[str, Any]:
    metrics = {
        "lifetime_value": (shopify or {}).get("lifetime_value"),
        "total_orders": (shopify or {}).get("total_orders"),
        "days_since_last_order": days_since_last_order(shopify),
        "crm_tier": (salesforce or {}).get("account_tier"),
        "open_support_cases": (salesforce or {}).get("open_cases"),
        "email_engagement_score": ((klaviyo or {}).get("email_engagement") or {}).get(
            "engagement_score"
        ),
        "churn_risk": (klaviyo or {}).get("churn_risk"),
        "predicted_clv": (klaviyo or {}).get("predicted_clv"),
    }
    return {k: v for k, v in metrics.items() if v is not None}


def build_recommendations(
    shopify: Dict[str, Any] | None,
    salesforce: Dict[str, Any] | None,
    klaviyo: Dict[str, Any] | None,
) -> List[Dict[str, Any]]:
    recommendations: List[Dict[str, Any]] = []

    if shopify and shopify["lifetime_value"] > HIGH_VALUE_LTV:
        recommendations.append(
            {
                "type": "upsell",
                "priority": "high",
                "title": "High-Value Customer Opportunity",
                "message": (
                    f"Customer has ${shopify['lifetime_value']:.2f} LTV. Consider personal "
                    "outreach, exclusive offers, or VIP program enrollment."
                ),
            }
        )

    score = ((klaviyo or {}).get("email_engagement") or {}).get("engagement_score")
    if score is not None and score > HIGH_ENGAGEMENT_SCORE:
        recommendations.append(
            {
                "type": "engagement",
                "priority": "medium",
                "title": "Capitalize on High Engagement",
                "message": f"Email engagement score is {score}/10. This customer actively reads emails.",
            }
        )

    if salesforce and salesforce.get("open_cases"):
        message = f"Customer has {salesforce['open_cases']} open case(s)."
        cases = salesforce.get("recent_cases") or []
        if cases:
            message += f" Latest: '{cases[0]['subject']}' ({cases[0]['status']})."
        recommendations.append(
            {
                "type": "support",
                "priority": "high",
                "title": "Resolve Active Support Issue",
                "message": message,
            }
        )

    days = days_since_last_order(shopify)
    if days is not None and days > DORMANT_AFTER_DAYS:
        recommendations.append(
            {
                "type": "reengagement",
                "priority": "medium",
                "title": "Win-Back Opportunity",
                "message": f"No purchase in {days} days. Customer may be churning.",
            }
        )

    if klaviyo and klaviyo.get("churn_risk") == "high":
        recommendations.append(
            {
                "type": "retention",
                "priority": "high",
                "title": "High Churn Risk Alert",
                "message": "Klaviyo predicts this customer is at high risk of churning.",
            }
        )

    return recommendations


def build_alerts(salesforce: Dict[str, Any] | None) -> List[Dict[str, Any]]:
    alerts = []
    if salesforce and salesforce.get("open_cases"):
        for case in salesforce.get("recent_cases") or []:
            if case["priority"] == "High" or int(case.get("days_open") or 0) > STALE_CASE_DAYS:
                alerts.append(
                    {
                        "type": "support",
                        "severity": "critical",
                        "message": (
                            f"Case {case['case_number']} is {case['priority']} priority "
                            f"and {case['days_open']} days old."
                        ),
                    }
                )
    return alerts


def safe_fetch(source: str, fetcher: Callable[[str], Dict[str, Any]], email: str) -> Dict[str, Any] | None:
    """Run one platform fetch; a failing platform is reported as missing."""
    try:
        return fetcher(email)
    except Exception as e:
        logger.warning("Fetching %s data for %s failed: %s", source, email, e)
        return None


def build_data_sources(platforms: Dict[str, Dict[str, Any] | None]) -> List[Dict[str, str]]:
    return [
        {"name": name, "status": "success" if data is not None else "unavailable"}
        for name, data in platforms.items()
    ]


def partial_aggregation(email: str) -> Dict[str, Any]:
    """Whatever the core platforms still return, fetched one by one."""
    fetched = {
        "shopify": safe_fetch("shopify", fetch_shopify_data, email),
        "salesforce": safe_fetch("salesforce", fetch_salesforce_data, email),
        "klaviyo": safe_fetch("klaviyo", fetch_klaviyo_data, email),
    }
    return {name: data for name, data in fetched.items() if data is not None}


class AggregateCustomerContext(Tool):
    name = "aggregate_customer_context"
    description = (
        "Get a unified view of one customer across Shopify (orders, lifetime value), "
        "Salesforce (CRM tier, support cases) and Klaviyo (email engagement, churn risk). "
        "Returns a prose summary, key metrics, recommendations and alerts."
    )
    parameters = (
        ToolParameter(
            name="email",
            type="string",
            description=(
                "Customer email address. The primary identifier used to look up "
                "customer data across all platforms."
            ),
            required=True,
            pattern=EMAIL_PATTERN,
        ),
        ToolParameter(
            name="include_historical",
            type="boolean",
            description=(
                "Include historical order data from Cin7 (inventory system). Enable for "
                "questions about purchase patterns over time."
            ),
            default=False,
        ),
    )

    def call(self, email: str, include_historical: bool = False) -> Dict[str, Any]:
        started = time.perf_counter()
        logger.info("Aggregating customer context for %s", email)

        platforms: Dict[str, Dict[str, Any] | None] = {
            "shopify": safe_fetch("shopify", fetch_shopify_data, email),
            "salesforce": safe_fetch("salesforce", fetch_salesforce_data, email),
            "klaviyo": safe_fetch("klaviyo", fetch_klaviyo_data, email),
        }
        if include_historical:
            platforms["cin7"] = safe_fetch("cin7", fetch_cin7_data, email)
        shopify = platforms["shopify"]
        salesforce = platforms["salesforce"]
        klaviyo = platforms["klaviyo"]

        try:
            context = {
                "email": email,
                "aggregated_at": utc_timestamp(),
                "data_sources": build_data_sources(platforms),
                "platforms": {name: data for name, data in platforms.items() if data is not None},
                "summary": build_summary(shopify, salesforce, klaviyo),
                "key_metrics": build_key_metrics(shopify, salesforce, klaviyo),
                "recommendations": build_recommendations(shopify, salesforce, klaviyo),
                "alerts": build_alerts(salesforce),
            }
        except Exception as e:
            logger.exception("Aggregating customer context for %s failed", email)
            return {
                "error": True,
                "error_type": type(e).__name__,
                "error_message": str(e),
                "email": email,
                "partial_data": partial_aggregation(email),
                "suggestion": "Try again or ask about a different customer.",
            }

        context["response_time_ms"] = round((time.perf_counter() - started) * 1000)
        logger.info("Customer context for %s completed in %sms", email, context["response_time_ms"])
        return context
