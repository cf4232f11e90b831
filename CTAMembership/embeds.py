from __future__ import annotations

import json
from contextlib import suppress
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

import discord

from CTAMembership.models import ActivationResult, Identity
from CTAMembership.utils import truncate

COLOR_OK = 0x00FF00
COLOR_WARN = 0xFFCC00
COLOR_CRITICAL = 0xFF0000
COLOR_INFO = 0x0099FF
COLOR_PANEL = 0x00AAFF


def _member_avatar_url(user: discord.abc.User) -> str | None:
    """Best-effort avatar URL that works across discord.py versions and user types."""
    with suppress(Exception):
        return str(user.display_avatar.url)
    return None


def critical_embed(title: str, details: Mapping[str, Any]) -> discord.Embed:
    embed = discord.Embed(
        title=truncate("⚠️ " + title, 256),
        description=truncate(json.dumps(dict(details), indent=2, default=str, ensure_ascii=False), 2000),
        color=COLOR_CRITICAL,
        timestamp=datetime.now(timezone.utc),
    )
    embed.set_footer(text="Critical Alert")
    return embed


def activation_attempt_embed(identity: Identity, code: str, result: ActivationResult) -> discord.Embed:
    embed = discord.Embed(
        title="Activation Attempt",
        color=COLOR_OK if result.success else COLOR_WARN,
        timestamp=datetime.now(timezone.utc),
    )
    embed.add_field(name="User", value=f"{identity.tag} ({identity.id})", inline=True)
    embed.add_field(name="UUID", value=truncate(code, 1024) or "—", inline=True)
    embed.add_field(
        name="Result",
        value=f"{'SUCCESS' if result.success else 'FAIL'} ({result.code.value})",
        inline=True,
    )
    if result.record_ref:
        embed.add_field(name="Order ID", value=str(result.record_ref), inline=True)
    if result.error:
        embed.add_field(name="Error", value=truncate(result.error, 1024), inline=False)
    return embed


def renewal_embed(discord_id: str, expired_order_id: Any, active_order_id: Any) -> discord.Embed:
    embed = discord.Embed(
        title="📝 Membership Renewal Detected",
        color=COLOR_INFO,
        timestamp=datetime.now(timezone.utc),
    )
    embed.add_field(name="Discord ID", value=str(discord_id), inline=True)
    embed.add_field(name="Expired Order ID", value=str(expired_order_id), inline=True)
    embed.add_field(name="New Active Order ID", value=str(active_order_id), inline=True)
    embed.set_footer(text="Renewal Alert")
    return embed


def mod_action_embed(action: str, member: discord.Member, reason: str, moderator: str) -> discord.Embed:
    embed = discord.Embed(
        title=f"Member {action}",
        color=COLOR_CRITICAL,
        timestamp=datetime.now(timezone.utc),
    )
    url = _member_avatar_url(member)
    if url:
        embed.set_thumbnail(url=url)
    embed.add_field(name="Member", value=f"{member} ({member.id})", inline=True)
    embed.add_field(name="Action", value=action, inline=True)
    embed.add_field(name="Moderator", value=moderator, inline=True)
    embed.add_field(name="Reason", value=reason or "No reason provided", inline=False)
    if member.joined_at:
        embed.add_field(name="Joined At", value=discord.utils.format_dt(member.joined_at, "R"), inline=True)
    embed.add_field(name="Account Created", value=discord.utils.format_dt(member.created_at, "R"), inline=True)
    return embed


def member_join_embed(member: discord.Member) -> discord.Embed:
    created = member.created_at
    age_days = (datetime.now(timezone.utc) - created).days
    embed = discord.Embed(
        title="New Member Joined",
        color=COLOR_OK,
        timestamp=datetime.now(timezone.utc),
    )
    url = _member_avatar_url(member)
    if url:
        embed.set_thumbnail(url=url)
    embed.add_field(name="Member", value=f"{member} ({member.id})", inline=True)
    embed.add_field(name="Account Created", value=discord.utils.format_dt(created, "R"), inline=True)
    embed.add_field(name="Account Age", value=f"{age_days} days", inline=True)
    flags = [name for name, on in member.public_flags if on]
    if flags:
        embed.add_field(name="User Badges", value=truncate(", ".join(flags), 1024), inline=False)
    roles = [r.name for r in member.roles if r != member.guild.default_role]
    if roles:
        embed.add_field(name="Initial Roles", value=truncate(", ".join(roles), 1024), inline=False)
    embed.set_footer(text=f"Member #{member.guild.member_count}")
    return embed


def activation_panel_embed() -> discord.Embed:
    return discord.Embed(
        title="Aktivasi keanggotaan Crypto Teknikal Academy kamu",
        description=(
            "Klik tombol dibawah dan isi kode aktivasi yang kamu dapatkan saat pembelian "
            "untuk mengaktivasi keanggotaan kamu"
        ),
        color=COLOR_PANEL,
        timestamp=datetime.now(timezone.utc),
    )


def reminder_embed(first_name: Optional[str], plan_label: str, expiry: str, renewal_url: str) -> discord.Embed:
    greeting = f"Halo {first_name}," if first_name else "Halo,"
    embed = discord.Embed(
        title="⏰ Membership kamu berakhir besok",
        description=(
            f"{greeting}\n\nMembership **{plan_label}** kamu akan berakhir pada **{expiry}**.\n"
            f"Perpanjang sekarang supaya akses kamu tidak terputus."
        ),
        color=COLOR_WARN,
        timestamp=datetime.now(timezone.utc),
    )
    if renewal_url:
        embed.add_field(name="Perpanjang", value=renewal_url, inline=False)
    return embed
