"""
Membership records and activation outcomes.

Purchase records come from the WooCommerce order store; webinar records come from the
file-backed webinar ledger. String-typed flags ("True", "1", ...) are normalized here,
so nothing downstream compares against string literals.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from CTAMembership.utils import truthy_flag

# Order metadata keys
META_ACTIVATION_UUID = "activation_uuid"
META_IS_OLD = "is_old"
META_DISCORD_ID = "discord_id"
META_DISCORD_USERNAME = "discord_username"
META_ACTIVATION_USED = "activation_used"
META_ACTIVATION_USED_AT = "activation_used_at"
META_EXPIRY_DATE = "expiry_date"

STATUS_COMPLETED = "completed"
STATUS_FINISHED = "finished"

# Logical role grants (mapped to role IDs by the claim mutator)
GRANT_MEMBER = "member"
GRANT_LIFETIME = "lifetime"

SOURCE_WEBINAR = "webinar"
SOURCE_ORDER = "order"


class ActivationCode(str, Enum):
    OK = "OK"
    NOT_FOUND = "NOT_FOUND"
    ALREADY_USED = "ALREADY_USED"
    NOT_IN_GUILD = "NOT_IN_GUILD"
    NO_ROLE_CONFIG = "NO_ROLE_CONFIG"
    PERSIST_FAILED = "PERSIST_FAILED"
    LOCK_TIMEOUT = "LOCK_TIMEOUT"
    ERROR = "ERROR"


@dataclass(frozen=True)
class Identity:
    """Platform user a record gets bound to."""
    id: str
    tag: str

    @classmethod
    def from_user(cls, user: Any) -> "Identity":
        return cls(id=str(user.id), tag=str(user))


@dataclass(frozen=True)
class RenewalLinks:
    three_month: str = ""
    twelve_month: str = ""


@dataclass(frozen=True)
class DurationPlan:
    label: str
    months: int
    renewal_url: str


def classify_duration(product_name: str, links: RenewalLinks | None = None) -> Optional[DurationPlan]:
    """Membership plan from a product name ("... 3 Bulan", "... 1 Tahun", "... 12 Bulan")."""
    links = links or RenewalLinks()
    name = str(product_name or "").lower()
    if "3 bulan" in name:
        return DurationPlan(label="3 Bulan", months=3, renewal_url=links.three_month)
    if "1 tahun" in name or "12 bulan" in name:
        return DurationPlan(label="1 Tahun", months=12, renewal_url=links.twelve_month)
    return None


def is_lifetime_product(product_name: str) -> bool:
    return "lifetime" in str(product_name or "").lower()


def _meta_to_dict(meta_data: object) -> Dict[str, Any]:
    # Duplicate keys: last write in a linear scan wins.
    out: Dict[str, Any] = {}
    if not isinstance(meta_data, list):
        return out
    for entry in meta_data:
        if isinstance(entry, dict) and entry.get("key"):
            out[str(entry["key"])] = entry.get("value")
    return out


def _str_or_none(value: object) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


@dataclass
class PurchaseRecord:
    id: int
    status: str
    meta: Dict[str, Any] = field(default_factory=dict)
    line_items: List[str] = field(default_factory=list)
    billing_first_name: str = ""
    billing_email: str = ""
    activation_code: Optional[str] = None
    is_old: bool = False
    discord_id: Optional[str] = None
    has_discord_id: bool = False
    discord_username: Optional[str] = None
    activation_used: bool = False
    expiry_date: Optional[str] = None

    @classmethod
    def from_api(cls, order: Dict[str, Any], code_key: str = META_ACTIVATION_UUID) -> "PurchaseRecord":
        """Build a record from a WooCommerce order payload."""
        meta = _meta_to_dict(order.get("meta_data"))
        billing = order.get("billing") if isinstance(order.get("billing"), dict) else {}
        items = order.get("line_items") if isinstance(order.get("line_items"), list) else []
        return cls(
            id=order.get("id"),
            status=str(order.get("status") or ""),
            meta=meta,
            line_items=[str(it.get("name") or "") for it in items if isinstance(it, dict)],
            billing_first_name=str(billing.get("first_name") or ""),
            billing_email=str(billing.get("email") or ""),
            activation_code=_str_or_none(meta.get(code_key)),
            is_old=truthy_flag(meta.get(META_IS_OLD)),
            discord_id=_str_or_none(meta.get(META_DISCORD_ID)),
            has_discord_id=META_DISCORD_ID in meta,
            discord_username=_str_or_none(meta.get(META_DISCORD_USERNAME)),
            activation_used=META_ACTIVATION_USED in meta,
            expiry_date=_str_or_none(meta.get(META_EXPIRY_DATE)),
        )

    @property
    def claimable(self) -> bool:
        return not self.is_old and not self.has_discord_id and not self.activation_used

    @property
    def is_lifetime(self) -> bool:
        return any(is_lifetime_product(n) for n in self.line_items)

    def duration_plan(self, links: RenewalLinks | None = None) -> Optional[DurationPlan]:
        for name in self.line_items:
            plan = classify_duration(name, links)
            if plan:
                return plan
        return None


WEBINAR_COLUMNS = ["activation_uuid", "is_used", "email", "discord_id", "discord_username"]


@dataclass
class WebinarRecord:
    activation_uuid: str
    is_used: bool = False
    email: str = ""
    discord_id: str = ""
    discord_username: str = ""
    extra: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "WebinarRecord":
        known = set(WEBINAR_COLUMNS)
        return cls(
            activation_uuid=str(row.get("activation_uuid") or "").strip(),
            is_used=truthy_flag(row.get("is_used")),
            email=str(row.get("email") or ""),
            discord_id=str(row.get("discord_id") or ""),
            discord_username=str(row.get("discord_username") or ""),
            extra={k: str(v or "") for k, v in row.items() if k and k not in known},
        )

    def to_row(self) -> Dict[str, str]:
        row = dict(self.extra)
        row.update({
            "activation_uuid": self.activation_uuid,
            "is_used": "True" if self.is_used else "False",
            "email": self.email,
            "discord_id": self.discord_id,
            "discord_username": self.discord_username,
        })
        return row


@dataclass
class ClaimTarget:
    """A claimable record located by the resolver.

    Webinar targets keep the ledger session (and its lock) open until the claim
    mutator persists the row; callers must always `release()`.
    """
    source: str
    code: str
    grants: Tuple[str, ...]
    order: Optional[PurchaseRecord] = None
    webinar: Optional[WebinarRecord] = None
    session: Any = None
    duration_label: Optional[str] = None

    @property
    def record_ref(self) -> str:
        if self.source == SOURCE_ORDER and self.order is not None:
            return str(self.order.id)
        return f"webinar:{self.code}"

    async def release(self) -> None:
        if self.session is not None:
            await self.session.release()


@dataclass
class Resolution:
    code: ActivationCode
    target: Optional[ClaimTarget] = None


@dataclass
class ActivationResult:
    success: bool
    code: ActivationCode
    record_ref: Optional[str] = None
    source: Optional[str] = None
    granted_roles: List[int] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "code": self.code.value,
            "record_ref": self.record_ref,
            "source": self.source,
            "granted_roles": list(self.granted_roles),
            "error": self.error,
        }


@dataclass
class RevokeResult:
    success: bool
    member_found: bool = True
    role_removed: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "member_found": self.member_found,
            "role_removed": self.role_removed,
            "error": self.error,
        }
