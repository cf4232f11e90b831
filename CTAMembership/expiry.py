"""
Expiry scanning on an offset-adjusted "business day".

`find_expiring(day)` is a full, side-effect-free rescan of completed orders; the
removal job scans today and the reminder job scans tomorrow.
"""

from __future__ import annotations

import html
import logging
import math
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from CTAMembership import embeds
from CTAMembership.audit_log import AuditLog
from CTAMembership.models import STATUS_COMPLETED, DurationPlan, PurchaseRecord, RenewalLinks
from CTAMembership.notifier import EmailSender, NotificationSink
from CTAMembership.utils import Clock, business_now, business_today, calendar_date, fmt_offset, parse_dt_any, utcnow
from CTAMembership.woo_api_client import DEFAULT_PAGE_SIZE, OrderStore, iter_orders

log = logging.getLogger("cta-membership")


async def find_active_order(
    orders: OrderStore,
    discord_id: Any,
    *,
    exclude_id: Any = None,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> Optional[PurchaseRecord]:
    """First completed, non-retired order bound to `discord_id` (optionally skipping one id)."""
    did = str(discord_id)
    async for _, order in iter_orders(orders, status=STATUS_COMPLETED, page_size=page_size):
        if order.is_old or order.discord_id != did:
            continue
        if exclude_id is not None and str(order.id) == str(exclude_id):
            continue
        return order
    return None


class ExpiryScanner:
    def __init__(
        self,
        orders: OrderStore,
        audit: AuditLog,
        *,
        tz_offset_hours: int = 7,
        page_size: int = DEFAULT_PAGE_SIZE,
        clock: Clock = utcnow,
    ):
        self.orders = orders
        self.audit = audit
        self.tz_offset_hours = int(tz_offset_hours)
        self.page_size = page_size
        self.clock = clock

    def today(self) -> date:
        return business_today(self.tz_offset_hours, self.clock)

    def tomorrow(self) -> date:
        return self.today() + timedelta(days=1)

    async def find_expiring(self, target_date: date) -> List[PurchaseRecord]:
        matches: List[PurchaseRecord] = []
        async for _, order in iter_orders(self.orders, status=STATUS_COMPLETED, page_size=self.page_size):
            if order.status != STATUS_COMPLETED or order.is_old or not order.expiry_date:
                continue
            expiry = calendar_date(order.expiry_date)
            if expiry is None:
                self.audit.warning("Unparsable expiry_date", orderId=order.id, expiry_date=order.expiry_date)
                continue
            if expiry == target_date:
                matches.append(order)
        return matches


def membership_status_message(order: Optional[PurchaseRecord], tz_offset_hours: int, clock: Clock = utcnow) -> str:
    """Reply text for the membership/expiry DM command."""
    if order is None:
        return "No active membership found for your account. If you believe this is an error, contact support."
    expiry_dt = parse_dt_any(order.expiry_date)
    if expiry_dt is None:
        return "An active membership was found but no expiry date is recorded. Contact support."

    now_adj = business_now(tz_offset_hours, clock)
    days_left = math.ceil((expiry_dt - now_adj).total_seconds() / 86400)
    expiry_iso = expiry_dt.date().isoformat()
    if days_left >= 0:
        remaining = f"{days_left} day(s) remaining."
    else:
        remaining = f"Expired {abs(days_left)} day(s) ago."
    return f"Your membership expires on {expiry_iso} ({fmt_offset(tz_offset_hours)}). {remaining}"


def reminder_email_html(first_name: str, plan: DurationPlan, expiry: str) -> str:
    name = html.escape(first_name) if first_name else ""
    link = ""
    if plan.renewal_url:
        url = html.escape(plan.renewal_url, quote=True)
        link = f'<p><a href="{url}">Perpanjang membership {html.escape(plan.label)}</a></p>'
    return (
        f"<p>Halo {name},</p>"
        f"<p>Membership <strong>{html.escape(plan.label)}</strong> kamu di Crypto Teknikal Academy "
        f"akan berakhir pada <strong>{html.escape(expiry)}</strong>.</p>"
        f"{link}"
        f"<p>Terima kasih sudah menjadi bagian dari komunitas kami.</p>"
    )


class ExpiryReminder:
    """Email + DM everyone whose membership ends tomorrow (business day)."""

    def __init__(
        self,
        scanner: ExpiryScanner,
        notifier: NotificationSink,
        email: Optional[EmailSender],
        audit: AuditLog,
        links: RenewalLinks,
    ):
        self.scanner = scanner
        self.notifier = notifier
        self.email = email
        self.audit = audit
        self.links = links

    async def remind(self, order: PurchaseRecord, expiry_label: str) -> Dict[str, Any]:
        plan = order.duration_plan(self.links)
        if plan is None:
            self.audit.info("Reminder skipped: unknown membership duration", orderId=order.id, items=order.line_items)
            return {"orderId": order.id, "status": "skipped", "reason": "unknown_duration"}

        outcome: Dict[str, Any] = {"orderId": order.id, "status": "sent", "plan": plan.label, "email": None, "dm": None}
        if order.billing_email and self.email is not None:
            res = await self.email.send_email(
                order.billing_email,
                f"Membership {plan.label} kamu berakhir besok",
                reminder_email_html(order.billing_first_name, plan, expiry_label),
            )
            outcome["email"] = res.success
            if not res.success:
                self.audit.warning("Reminder email failed", orderId=order.id, reason=res.reason)
        if order.discord_id:
            outcome["dm"] = await self.notifier.send_dm(
                order.discord_id,
                embed=embeds.reminder_embed(order.billing_first_name, plan.label, expiry_label, plan.renewal_url),
            )
        return outcome

    async def run(self) -> Dict[str, Any]:
        target = self.scanner.tomorrow()
        self.audit.info("Running expiry reminder...", target=target.isoformat(), tzOffsetHours=self.scanner.tz_offset_hours)
        try:
            expiring = await self.scanner.find_expiring(target)
        except Exception as e:
            self.audit.error("Error running expiry reminder job", error=str(e))
            await self.notifier.critical("Expiry Reminder Critical Error", {"error": str(e)})
            return {"success": False, "error": str(e)}

        results: List[Dict[str, Any]] = []
        for order in expiring:
            try:
                results.append(await self.remind(order, target.isoformat()))
            except Exception as e:
                self.audit.error("Error sending expiry reminder", orderId=order.id, error=str(e))
                results.append({"orderId": order.id, "status": "error", "error": str(e)})
        sent = sum(1 for r in results if r.get("status") == "sent")
        self.audit.info(f"Expiry reminders processed for {len(expiring)} orders", sent=sent)
        return {"success": True, "count": len(expiring), "sent": sent, "results": results}
