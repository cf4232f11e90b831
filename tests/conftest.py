from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

import pytest

from CTAMembership.audit_log import AuditLog
from CTAMembership.models import PurchaseRecord
from CTAMembership.notifier import EmailResult
from CTAMembership.webinar_ledger import FileLedgerLock, WebinarLedger


def make_order(
    order_id: int,
    *,
    status: str = "completed",
    code: Optional[str] = None,
    items: Iterable[str] = ("Membership 3 Bulan",),
    first_name: str = "Budi",
    email: str = "budi@example.com",
    **meta: Any,
) -> Dict[str, Any]:
    """WooCommerce-shaped order payload."""
    meta_data = []
    if code is not None:
        meta_data.append({"id": 1, "key": "activation_uuid", "value": code})
    for i, (k, v) in enumerate(meta.items(), start=2):
        meta_data.append({"id": i, "key": k, "value": v})
    return {
        "id": order_id,
        "status": status,
        "billing": {"first_name": first_name, "email": email},
        "line_items": [{"name": n} for n in items],
        "meta_data": meta_data,
    }


class FakeOrderStore:
    """In-memory order store with WooCommerce paging and last-write-wins metadata."""

    def __init__(self, orders: List[Dict[str, Any]]):
        self.orders = [copy.deepcopy(o) for o in orders]
        self.updates: List[tuple] = []
        self.status_changes: List[tuple] = []
        self.fail_update: Optional[Exception] = None
        self.fail_set_status: Optional[Exception] = None
        self.fail_count: Optional[Exception] = None

    def _filtered(self, status: Optional[str]) -> List[Dict[str, Any]]:
        return [o for o in self.orders if not status or o.get("status") == status]

    def _get(self, order_id: Any) -> Dict[str, Any]:
        for o in self.orders:
            if str(o["id"]) == str(order_id):
                return o
        raise KeyError(order_id)

    def raw(self, order_id: Any) -> Dict[str, Any]:
        return self._get(order_id)

    def record(self, order_id: Any) -> PurchaseRecord:
        return PurchaseRecord.from_api(self._get(order_id))

    async def count(self, status: Optional[str] = None) -> int:
        if self.fail_count is not None:
            raise self.fail_count
        return len(self._filtered(status))

    async def page(self, page: int, per_page: int = 100, status: Optional[str] = None) -> List[PurchaseRecord]:
        rows = self._filtered(status)
        start = (page - 1) * per_page
        return [PurchaseRecord.from_api(copy.deepcopy(o)) for o in rows[start:start + per_page]]

    async def update(self, order_id: Any, meta_patch: Mapping[str, Any]) -> PurchaseRecord:
        if self.fail_update is not None:
            raise self.fail_update
        order = self._get(order_id)
        for k, v in meta_patch.items():
            order["meta_data"].append({"key": k, "value": v})
        self.updates.append((order_id, dict(meta_patch)))
        return PurchaseRecord.from_api(order)

    async def set_status(self, order_id: Any, status: str, meta_patch: Mapping[str, Any]) -> PurchaseRecord:
        if self.fail_set_status is not None:
            raise self.fail_set_status
        order = self._get(order_id)
        order["status"] = status
        for k, v in meta_patch.items():
            order["meta_data"].append({"key": k, "value": v})
        self.status_changes.append((order_id, status, dict(meta_patch)))
        return PurchaseRecord.from_api(order)


@dataclass
class FakeMember:
    id: int
    name: str = "member"

    def __str__(self) -> str:
        return self.name


class FakeRoleGrantor:
    def __init__(self, members: Iterable[int] = ()):
        self.members: Dict[str, FakeMember] = {str(m): FakeMember(int(m)) for m in members}
        self.roles: Dict[str, set] = {str(m): set() for m in members}
        self.added: List[tuple] = []
        self.removed: List[tuple] = []
        self.fail_add: Optional[Exception] = None
        self.fail_remove: Optional[Exception] = None
        self.fail_fetch: Optional[Exception] = None

    def give(self, user_id: Any, role_id: int) -> None:
        self.roles.setdefault(str(user_id), set()).add(int(role_id))

    async def fetch_member(self, user_id: Any) -> Optional[FakeMember]:
        if self.fail_fetch is not None:
            raise self.fail_fetch
        return self.members.get(str(user_id))

    async def add_roles(self, user_id: Any, role_ids: Iterable[int], reason: str) -> None:
        if self.fail_add is not None:
            raise self.fail_add
        ids = [int(r) for r in role_ids]
        self.roles.setdefault(str(user_id), set()).update(ids)
        self.added.append((str(user_id), ids, reason))

    async def remove_role(self, user_id: Any, role_id: int, reason: str) -> None:
        if self.fail_remove is not None:
            raise self.fail_remove
        self.roles.get(str(user_id), set()).discard(int(role_id))
        self.removed.append((str(user_id), int(role_id), reason))

    async def has_role(self, user_id: Any, role_id: int) -> bool:
        return int(role_id) in self.roles.get(str(user_id), set())


@dataclass
class FakeNotifier:
    criticals: List[tuple] = field(default_factory=list)
    attempts: List[tuple] = field(default_factory=list)
    renewals: List[tuple] = field(default_factory=list)
    removals: List[tuple] = field(default_factory=list)
    dms: List[tuple] = field(default_factory=list)

    async def critical(self, title: str, details: Mapping[str, Any]) -> None:
        self.criticals.append((title, dict(details)))

    def activation_attempt(self, identity, code, result) -> None:
        self.attempts.append((identity, code, result))

    async def renewal_detected(self, discord_id, expired_order_id, active_order_id) -> None:
        self.renewals.append((discord_id, expired_order_id, active_order_id))

    async def membership_removed(self, member, reason, moderator) -> None:
        self.removals.append((member, reason, moderator))

    async def send_dm(self, user_id, content=None, embed=None) -> bool:
        self.dms.append((str(user_id), content, embed))
        return True

    def critical_titles(self) -> List[str]:
        return [t for t, _ in self.criticals]


class FakeEmailSender:
    def __init__(self, success: bool = True):
        self.success = success
        self.sent: List[tuple] = []

    async def send_email(self, to_email: str, subject: str, html: str) -> EmailResult:
        self.sent.append((to_email, subject, html))
        return EmailResult(self.success, None if self.success else "boom")


def fixed_clock(year: int, month: int, day: int, hour: int = 0, minute: int = 0):
    now = datetime(year, month, day, hour, minute, tzinfo=timezone.utc)
    return lambda: now


@pytest.fixture
def audit(tmp_path):
    return AuditLog(tmp_path / "audit.jsonl")


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def ledger_path(tmp_path):
    return tmp_path / "webinar.csv"


@pytest.fixture
def ledger(ledger_path):
    return WebinarLedger(ledger_path, lock=FileLedgerLock(str(ledger_path) + ".lock", timeout=1.0, poll_interval=0.05))


def write_ledger(path, rows: List[Dict[str, str]], columns: Optional[List[str]] = None) -> None:
    cols = columns or ["activation_uuid", "is_used", "email", "discord_id", "discord_username"]
    lines = [",".join(cols)]
    for row in rows:
        lines.append(",".join(str(row.get(c, "")) for c in cols))
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
