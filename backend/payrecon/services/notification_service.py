# Overview: Fire-and-forget notification hooks (order paid, invoice created, payment link sent).

"""
Notifications

Hooks are plain callables `hook(event, payload)` registered on the app
(app.extensions["notification_hooks"]). Delivery (e-mail, webhooks) lives
outside this service; the default hook only logs.

A failing hook is logged and skipped. notify() never raises, since it runs
after money already moved.
"""

from __future__ import annotations

from flask import current_app

ORDER_PAID = "order_paid"
INVOICE_CREATED = "invoice_created"
PAYMENT_LINK_SENT = "payment_link_sent"
CREDIT_MEMO_ISSUED = "credit_memo_issued"
REFUND_PROCESSED = "refund_processed"


def log_hook(event: str, payload: dict) -> None:
    current_app.logger.info("notification %s: %s", event, payload)


def register_hook(app, hook) -> None:
    app.extensions.setdefault("notification_hooks", []).append(hook)


def notify(event: str, payload: dict) -> int:
    """Call every registered hook; return how many succeeded."""
    delivered = 0
    for hook in current_app.extensions.get("notification_hooks", []):
        try:
            hook(event, payload)
            delivered += 1
        except Exception:
            current_app.logger.exception("Notification hook %r failed for %s", hook, event)
    return delivered
