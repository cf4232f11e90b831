"""
Daily expiry check: retire today's expiring orders, revoking the member role unless the
same Discord user already holds another active order (a renewal).
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from CTAMembership.audit_log import AuditLog
from CTAMembership.claims import ClaimMutator
from CTAMembership.expiry import ExpiryScanner, find_active_order
from CTAMembership.models import PurchaseRecord
from CTAMembership.notifier import NotificationSink
from CTAMembership.woo_api_client import DEFAULT_PAGE_SIZE, OrderStore, mark_order_finished

log = logging.getLogger("cta-membership")

EXPIRY_REASON = "Membership expired"


class RenewalReconciler:
    def __init__(
        self,
        orders: OrderStore,
        mutator: ClaimMutator,
        notifier: NotificationSink,
        audit: AuditLog,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
    ):
        self.orders = orders
        self.mutator = mutator
        self.notifier = notifier
        self.audit = audit
        self.page_size = page_size

    async def reconcile(self, order: PurchaseRecord) -> Dict[str, Any]:
        """Retire one expiring order. Returns a per-order result dict."""
        if not order.discord_id:
            self.audit.warning("Expiring order has no discord_id; skipping", orderId=order.id)
            return {"orderId": order.id, "action": "skipped", "reason": "no_discord_id"}

        active = await find_active_order(
            self.orders, order.discord_id, exclude_id=order.id, page_size=self.page_size
        )
        if active is not None:
            self.audit.info(
                "Renewal detected; keeping membership role",
                discordId=order.discord_id, expiredOrderId=order.id, activeOrderId=active.id,
            )
            finished = await self._finish(order)
            await self.notifier.renewal_detected(order.discord_id, order.id, active.id)
            return {
                "orderId": order.id,
                "action": "renewed" if finished else "renewed_not_finished",
                "activeOrderId": active.id,
            }

        revoked = await self.mutator.revoke(order.discord_id, EXPIRY_REASON, moderator="SYSTEM")
        if not revoked.success:
            # Left completed; the next scan retries.
            await self.notifier.critical(
                "Auto-Removal Failed",
                {"orderId": order.id, "discordId": order.discord_id, "error": revoked.error},
            )
            return {"orderId": order.id, "action": "revoke_failed", "error": revoked.error}

        finished = await self._finish(order)
        return {
            "orderId": order.id,
            "action": "removed" if finished else "removed_not_finished",
            "memberFound": revoked.member_found,
            "roleRemoved": revoked.role_removed,
        }

    async def _finish(self, order: PurchaseRecord) -> bool:
        try:
            await mark_order_finished(self.orders, order.id)
        except Exception as e:
            await self.notifier.critical(
                "Mark Order Finished Failed",
                {"orderId": order.id, "discordId": order.discord_id, "error": str(e)},
            )
            return False
        self.audit.info("Order marked finished", orderId=order.id)
        return True


async def run_expiry_check(
    scanner: ExpiryScanner,
    reconciler: RenewalReconciler,
    audit: AuditLog,
    notifier: NotificationSink,
) -> Dict[str, Any]:
    target = scanner.today()
    audit.info("Running expiry check...", target=target.isoformat(), tzOffsetHours=scanner.tz_offset_hours)
    try:
        expiring = await scanner.find_expiring(target)
    except Exception as e:
        audit.error("Error running expiry check", error=str(e))
        await notifier.critical("Expiry Check Critical Error", {"error": str(e)})
        return {"success": False, "error": str(e)}

    results: List[Dict[str, Any]] = []
    for order in expiring:
        try:
            results.append(await reconciler.reconcile(order))
        except Exception as e:
            audit.error("Error processing expiring order", orderId=order.id, error=str(e))
            await notifier.critical("Expiry Processing Error", {"orderId": order.id, "error": str(e)})
            results.append({"orderId": order.id, "action": "error", "error": str(e)})

    audit.info(f"Expiry check processed {len(expiring)} orders")
    return {"success": True, "count": len(expiring), "results": results}
