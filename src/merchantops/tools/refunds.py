import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from ..models import ToolParameter, utc_timestamp
from .base import Tool

logger = logging.getLogger(__name__)

REFUND_WINDOW_DAYS = 30
DEFAULT_ORDER_TOTAL = 125.99

# Orders with non-default state; any other id resolves to a paid order placed 10 days ago.
_MOCK_ORDERS: Dict[str, Dict[str, Any]] = {
    "ORD-PENDING": {"total": 89.00, "age_days": 2, "financial_status": "pending"},
    "ORD-OLD": {"total": 310.40, "age_days": 45, "financial_status": "paid"},
}


class RefundError(Exception):
    """The order is not eligible for the requested refund."""


def fetch_order(order_id: str) -> Dict[str, Any]:
    spec = _MOCK_ORDERS.get(
        order_id,
        {"total": DEFAULT_ORDER_TOTAL, "age_days": 10, "financial_status": "paid"},
    )
    return {
        "id": order_id,
        "total": spec["total"],
        "created_at": datetime.now(timezone.utc) - timedelta(days=spec["age_days"]),
        "financial_status": spec["financial_status"],
        "fulfillment_status": "fulfilled",
    }


def check_refund_eligibility(order: Dict[str, Any], amount: float | None) -> None:
    if order["financial_status"] != "paid":
        raise RefundError("Order not paid yet")
    age = datetime.now(timezone.utc) - order["created_at"]
    if age > timedelta(days=REFUND_WINDOW_DAYS):
        raise RefundError(f"Order too old to refund (>{REFUND_WINDOW_DAYS} days)")
    if amount is not None:
        if amount <= 0:
            raise RefundError("Refund amount must be positive")
        if amount > order["total"]:
            raise RefundError(
                f"Refund amount (${amount:.2f}) exceeds order total (${order['total']:.2f})"
            )


class RefundOrder(Tool):
    name = "refund_order"
    description = (
        "Issue a full or partial refund for a Shopify order. Orders must be paid and "
        f"less than {REFUND_WINDOW_DAYS} days old."
    )
    parameters = (
        ToolParameter(name="order_id", type="string", description="Shopify order ID to refund", required=True),
        ToolParameter(
            name="amount",
            type="number",
            description="Refund amount in dollars. If not specified, a full refund is issued.",
        ),
        ToolParameter(
            name="reason",
            type="string",
            description="Reason for refund (e.g. 'customer_request', 'defective_product')",
            default="customer_request",
        ),
        ToolParameter(
            name="notify_customer",
            type="boolean",
            description="Whether to send a refund confirmation email to the customer",
            default=True,
        ),
    )

    def call(
        self,
        order_id: str,
        amount: float | None = None,
        reason: str = "customer_request",
        notify_customer: bool = True,
    ) -> Dict[str, Any]:
        logger.info("Initiating refund for order %s", order_id)
        order = fetch_order(order_id)
        check_refund_eligibility(order, amount)

        refund_id = f"refund_{secrets.token_hex(6)}"
        refunded = amount if amount is not None else order["total"]
        logger.info("Refund processed for order %s: %s", order_id, refund_id)
        return {
            "success": True,
            "refund_id": refund_id,
            "order_id": order_id,
            "amount_refunded": refunded,
            "original_order_total": order["total"],
            "reason": reason,
            "notification_sent": notify_customer,
            "processed_at": utc_timestamp(),
        }
