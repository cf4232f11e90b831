"""
Dual-source activation resolver.

A redemption code is looked up in the webinar ledger first (under its exclusive lock),
then across every page of the order store. The first record carrying the code is
terminal: a claimed or retired match never falls through to later records.
"""

from __future__ import annotations

import logging
from typing import Optional

from CTAMembership.audit_log import AuditLog
from CTAMembership.models import (
    GRANT_LIFETIME,
    GRANT_MEMBER,
    SOURCE_ORDER,
    SOURCE_WEBINAR,
    ActivationCode,
    ClaimTarget,
    PurchaseRecord,
    RenewalLinks,
    Resolution,
)
from CTAMembership.webinar_ledger import WebinarLedger
from CTAMembership.woo_api_client import DEFAULT_PAGE_SIZE, OrderStore, iter_orders

log = logging.getLogger("cta-membership")


class ActivationResolver:
    def __init__(
        self,
        orders: OrderStore,
        ledger: Optional[WebinarLedger],
        audit: AuditLog,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
        renewal_links: Optional[RenewalLinks] = None,
    ):
        self.orders = orders
        self.ledger = ledger
        self.audit = audit
        self.page_size = page_size
        self.renewal_links = renewal_links or RenewalLinks()

    async def resolve(self, code: str) -> Resolution:
        """Locate a claimable record for `code`.

        Raises LedgerLockTimeout when the webinar ledger stays locked; the order store
        is not consulted in that case.
        """
        code = str(code or "").strip()
        if not code:
            return Resolution(ActivationCode.NOT_FOUND)

        webinar = await self._resolve_webinar(code)
        if webinar is not None:
            return webinar
        return await self._resolve_order(code)

    async def _resolve_webinar(self, code: str) -> Optional[Resolution]:
        if self.ledger is None:
            return None
        session = await self.ledger.open_session()
        keep_lock = False
        try:
            row = session.find(code)
            if row is None:
                return None
            if row.is_used:
                self.audit.info("Webinar code already used", uuid=code, discordId=row.discord_id or None)
                return Resolution(ActivationCode.ALREADY_USED)
            keep_lock = True
            # Lock stays held until the claim mutator persists the row.
            return Resolution(
                ActivationCode.OK,
                ClaimTarget(
                    source=SOURCE_WEBINAR,
                    code=code,
                    grants=(GRANT_MEMBER, GRANT_LIFETIME),
                    webinar=row,
                    session=session,
                ),
            )
        finally:
            if not keep_lock:
                await session.release()

    async def _resolve_order(self, code: str) -> Resolution:
        self.audit.event("findOrderByUUID.start", uuid=code)
        async for page_no, order in iter_orders(self.orders, page_size=self.page_size):
            if order.activation_code != code:
                continue
            if order.is_old:
                self.audit.event("findOrderByUUID.retired", orderId=order.id, uuid=code, page=page_no)
                return Resolution(ActivationCode.NOT_FOUND)
            if not order.claimable:
                self.audit.event("findOrderByUUID.claimed", orderId=order.id, uuid=code, page=page_no)
                return Resolution(ActivationCode.NOT_FOUND)

            self.audit.event("findOrderByUUID.found", orderId=order.id, uuid=code, page=page_no)
            return Resolution(ActivationCode.OK, self._order_target(code, order))

        self.audit.event("findOrderByUUID.notFound", uuid=code)
        return Resolution(ActivationCode.NOT_FOUND)

    def _order_target(self, code: str, order: PurchaseRecord) -> ClaimTarget:
        grants = (GRANT_MEMBER, GRANT_LIFETIME) if order.is_lifetime else (GRANT_MEMBER,)
        plan = order.duration_plan(self.renewal_links)
        return ClaimTarget(
            source=SOURCE_ORDER,
            code=code,
            grants=grants,
            order=order,
            duration_label=plan.label if plan else None,
        )
