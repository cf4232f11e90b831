"""
Claim mutator and the activation flow shared by the DM command and the modal.

Webinar claims: mark row used -> persist ledger -> release lock -> grant roles.
Order claims: grant roles -> persist claim metadata on the order.
Either way, the attempt is written to the audit log and the activation log channel.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter, defaultdict
from typing import Any, Dict, List, Optional

from CTAMembership.audit_log import AuditLog
from CTAMembership.models import (
    GRANT_LIFETIME,
    GRANT_MEMBER,
    META_ACTIVATION_USED,
    META_ACTIVATION_USED_AT,
    META_DISCORD_ID,
    META_DISCORD_USERNAME,
    SOURCE_WEBINAR,
    ActivationCode,
    ActivationResult,
    ClaimTarget,
    Identity,
    RevokeResult,
)
from CTAMembership.notifier import NotificationSink
from CTAMembership.resolver import ActivationResolver
from CTAMembership.roles import RoleGrantor
from CTAMembership.utils import Clock, utcnow
from CTAMembership.webinar_ledger import LedgerLockTimeout
from CTAMembership.woo_api_client import OrderStore

log = logging.getLogger("cta-membership")


class ClaimMutator:
    def __init__(
        self,
        orders: OrderStore,
        roles: RoleGrantor,
        notifier: NotificationSink,
        audit: AuditLog,
        *,
        member_role_id: Optional[int],
        lifetime_role_id: Optional[int] = None,
        clock: Clock = utcnow,
    ):
        self.orders = orders
        self.roles = roles
        self.notifier = notifier
        self.audit = audit
        self.member_role_id = member_role_id
        self.lifetime_role_id = lifetime_role_id
        self.clock = clock

    def role_ids_for(self, target: ClaimTarget) -> Optional[List[int]]:
        """Role IDs for the target's grants (None if any grant is not configured)."""
        mapping = {GRANT_MEMBER: self.member_role_id, GRANT_LIFETIME: self.lifetime_role_id}
        out: List[int] = []
        for grant in target.grants:
            rid = mapping.get(grant)
            if not rid:
                return None
            out.append(int(rid))
        return out

    async def claim(self, target: ClaimTarget, identity: Identity) -> ActivationResult:
        role_ids = self.role_ids_for(target)
        if role_ids is None:
            await target.release()
            return ActivationResult(False, ActivationCode.NO_ROLE_CONFIG, target.record_ref, target.source)
        if target.source == SOURCE_WEBINAR:
            return await self._claim_webinar(target, identity, role_ids)
        return await self._claim_order(target, identity, role_ids)

    async def _claim_webinar(self, target: ClaimTarget, identity: Identity, role_ids: List[int]) -> ActivationResult:
        session = target.session
        try:
            session.mark_used(target.webinar, identity.id, identity.tag)
            await session.commit()
        finally:
            await target.release()
        self.audit.info("Webinar code marked used", uuid=target.code, userId=identity.id)

        # Row stays used even if the grant fails (no double grant on retry).
        try:
            await self.roles.add_roles(identity.id, role_ids, reason="Webinar activation")
        except Exception as e:
            await self.notifier.critical(
                "Webinar Role Grant Failed",
                {"uuid": target.code, "userId": identity.id, "roles": role_ids, "error": str(e)},
            )
            return ActivationResult(False, ActivationCode.ERROR, target.record_ref, target.source, error=str(e))
        return ActivationResult(True, ActivationCode.OK, target.record_ref, target.source, granted_roles=role_ids)

    async def _claim_order(self, target: ClaimTarget, identity: Identity, role_ids: List[int]) -> ActivationResult:
        order = target.order
        await self.roles.add_roles(identity.id, role_ids, reason=f"Activation for order {order.id}")

        patch = {
            META_ACTIVATION_USED: "1",
            META_ACTIVATION_USED_AT: self.clock().isoformat().replace("+00:00", "Z"),
            META_DISCORD_ID: identity.id,
            META_DISCORD_USERNAME: identity.tag,
        }
        try:
            await self.orders.update(order.id, patch)
        except Exception as e:
            self.audit.error(
                "Failed to update WC order after activation",
                orderId=order.id, userId=identity.id, error=str(e),
            )
            await self.notifier.critical(
                "Activation WC Update Failed",
                {"orderId": order.id, "userId": identity.id, "error": str(e)},
            )
            return ActivationResult(
                False, ActivationCode.PERSIST_FAILED, target.record_ref, target.source,
                granted_roles=role_ids, error=str(e),
            )
        return ActivationResult(True, ActivationCode.OK, target.record_ref, target.source, granted_roles=role_ids)

    async def revoke(self, user_id: Any, reason: str, moderator: str = "SYSTEM") -> RevokeResult:
        """Remove the member role (idempotent when the role is already gone)."""
        uid = str(user_id)
        if not self.member_role_id:
            self.audit.error("MEMBER_ROLE_ID not configured", userId=uid)
            return RevokeResult(False, error="Server not configured")

        try:
            member = await self.roles.fetch_member(uid)
        except Exception as e:
            self.audit.error("Error fetching member for role removal", userId=uid, error=str(e))
            return RevokeResult(False, error=str(e))
        if member is None:
            self.audit.warning("Member not found for role removal", userId=uid)
            return RevokeResult(True, member_found=False, error="Member not found")

        removed = False
        try:
            if await self.roles.has_role(uid, self.member_role_id):
                await self.roles.remove_role(uid, self.member_role_id, reason)
                removed = True
            else:
                self.audit.warning("Member did not have membership role", userId=uid)
        except Exception as e:
            self.audit.error("Could not remove membership role", userId=uid, roleId=self.member_role_id, error=str(e))
            await self.notifier.critical(
                "Membership Role Removal Failed",
                {"userId": uid, "roleId": self.member_role_id, "error": str(e), "reason": reason, "moderator": moderator},
            )
            return RevokeResult(False, error=str(e))

        await self.notifier.membership_removed(member, reason, moderator)
        self.audit.info("Member membership role removed", userId=uid, removed=removed, reason=reason, moderator=moderator)
        return RevokeResult(True, member_found=True, role_removed=removed)


class MembershipActivator:
    """resolve -> membership check -> role config check -> claim, with attempt logging."""

    def __init__(self, resolver: ActivationResolver, mutator: ClaimMutator, notifier: NotificationSink, audit: AuditLog):
        self.resolver = resolver
        self.mutator = mutator
        self.notifier = notifier
        self.audit = audit
        # Serializes resolve+persist per code within this process.
        self._code_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._code_lock_users: Counter = Counter()

    async def activate(self, code: str, identity: Identity) -> ActivationResult:
        code = str(code or "").strip()
        result = ActivationResult(False, ActivationCode.ERROR)
        lock = self._code_locks[code]
        self._code_lock_users[code] += 1
        try:
            async with lock:
                result = await self._activate_locked(code, identity)
        except Exception as e:
            self.audit.error("Error during activation", userId=identity.id, uuid=code, error=str(e))
            result = ActivationResult(False, ActivationCode.ERROR, error=str(e))
        finally:
            self._drop_code_lock(code)
            self._record_attempt(code, identity, result)
        return result

    def _drop_code_lock(self, code: str) -> None:
        # Entries live only while some activation for the code is in flight.
        self._code_lock_users[code] -= 1
        if self._code_lock_users[code] <= 0:
            del self._code_lock_users[code]
            self._code_locks.pop(code, None)

    async def _activate_locked(self, code: str, identity: Identity) -> ActivationResult:
        try:
            resolution = await self.resolver.resolve(code)
        except LedgerLockTimeout as e:
            self.audit.error("Webinar ledger lock timeout", uuid=code, userId=identity.id, error=str(e))
            return ActivationResult(False, ActivationCode.LOCK_TIMEOUT, error=str(e))

        target = resolution.target
        if target is None:
            return ActivationResult(False, resolution.code)

        try:
            member = await self.mutator.roles.fetch_member(identity.id)
            if member is None:
                return ActivationResult(False, ActivationCode.NOT_IN_GUILD, target.record_ref, target.source)

            if self.mutator.role_ids_for(target) is None:
                await self.notifier.critical(
                    "Activation Role Not Configured",
                    {"userId": identity.id, "uuid": code, "grants": list(target.grants)},
                )
                return ActivationResult(False, ActivationCode.NO_ROLE_CONFIG, target.record_ref, target.source)

            return await self.mutator.claim(target, identity)
        finally:
            await target.release()

    def _record_attempt(self, code: str, identity: Identity, result: ActivationResult) -> None:
        try:
            self.audit.record(
                "INFO" if result.success else "WARN",
                "Activation attempt",
                userId=identity.id,
                userTag=identity.tag,
                uuid=code,
                outcome=result.code.value,
                recordRef=result.record_ref,
                error=result.error,
            )
            self.notifier.activation_attempt(identity, code, result)
        except Exception as e:
            log.warning(f"Failed to record activation attempt: {e}")
