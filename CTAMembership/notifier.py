"""
Notification sink: channel posts, DMs, critical alerts, and reminder email.

Every send here is best-effort. Failures are logged and swallowed; none of them may
break the activation or expiry flows that call in.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Mapping, Optional, Protocol, Set

import aiohttp
import discord

from CTAMembership import embeds
from CTAMembership.audit_log import AuditLog
from CTAMembership.models import ActivationResult, Identity

log = logging.getLogger("cta-membership")

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"


@dataclass
class EmailResult:
    success: bool
    reason: Optional[str] = None


class NotificationSink(Protocol):
    async def critical(self, title: str, details: Mapping[str, Any]) -> None: ...

    def activation_attempt(self, identity: Identity, code: str, result: ActivationResult) -> None: ...

    async def renewal_detected(self, discord_id: str, expired_order_id: Any, active_order_id: Any) -> None: ...

    async def membership_removed(self, member: Any, reason: str, moderator: str) -> None: ...

    async def send_dm(self, user_id: Any, content: Optional[str] = None, embed: Optional[discord.Embed] = None) -> bool: ...


class EmailSender(Protocol):
    async def send_email(self, to_email: str, subject: str, html: str) -> EmailResult: ...


class SendGridEmailSender:
    """Minimal SendGrid v3 send over aiohttp."""

    def __init__(self, api_key: str, from_email: str, from_name: str = "", *, timeout_seconds: float = 10.0):
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def send_email(self, to_email: str, subject: str, html: str) -> EmailResult:
        if not self.api_key:
            return EmailResult(False, "SendGrid API key not configured")
        if not to_email:
            return EmailResult(False, "Missing recipient")

        sender = {"email": self.from_email}
        if self.from_name:
            sender["name"] = self.from_name
        payload = {
            "personalizations": [{"to": [{"email": to_email}]}],
            "from": sender,
            "subject": subject,
            "content": [{"type": "text/html", "value": html}],
        }
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(SENDGRID_URL, json=payload, headers=headers, timeout=self._timeout) as resp:
                    if 200 <= resp.status < 300:
                        return EmailResult(True)
                    body = (await resp.text())[:500]
                    return EmailResult(False, f"SendGrid error {resp.status}: {body}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            return EmailResult(False, f"SendGrid request failed: {e}")


class DiscordNotifier:
    """NotificationSink posting to the configured Discord channels."""

    def __init__(
        self,
        bot: discord.Client,
        audit: AuditLog,
        *,
        admin_log_channel_id: Optional[int] = None,
        activation_log_channel_id: Optional[int] = None,
        mod_log_channel_id: Optional[int] = None,
    ):
        self.bot = bot
        self.audit = audit
        self.admin_log_channel_id = admin_log_channel_id
        self.activation_log_channel_id = activation_log_channel_id
        self.mod_log_channel_id = mod_log_channel_id
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable[Any]) -> None:
        """Fire-and-forget (keeps a reference until the task finishes)."""
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _channel(self, channel_id: Optional[int]) -> Optional[discord.abc.Messageable]:
        if not channel_id or self.bot.user is None:
            return None
        ch = self.bot.get_channel(int(channel_id))
        if ch is None:
            try:
                ch = await self.bot.fetch_channel(int(channel_id))
            except discord.DiscordException as e:
                log.warning(f"Channel {channel_id} unavailable: {e}")
                return None
        return ch if isinstance(ch, discord.abc.Messageable) else None

    async def send_channel(
        self,
        channel_id: Optional[int],
        content: Optional[str] = None,
        embed: Optional[discord.Embed] = None,
        view: Optional[discord.ui.View] = None,
    ) -> Optional[discord.Message]:
        ch = await self._channel(channel_id)
        if ch is None:
            return None
        try:
            kwargs: dict = {"content": content, "embed": embed}
            if view is not None:
                kwargs["view"] = view
            return await ch.send(**kwargs)
        except discord.DiscordException as e:
            self.audit.warning("Failed to send channel message", channelId=channel_id, error=str(e))
            return None

    async def send_dm(self, user_id: Any, content: Optional[str] = None, embed: Optional[discord.Embed] = None) -> bool:
        try:
            user = self.bot.get_user(int(user_id)) or await self.bot.fetch_user(int(user_id))
            await user.send(content=content, embed=embed)
            return True
        except (discord.DiscordException, ValueError) as e:
            self.audit.warning("Failed to send DM", userId=str(user_id), error=str(e))
            return False

    async def critical(self, title: str, details: Mapping[str, Any]) -> None:
        self.audit.critical(title, **dict(details))
        try:
            await self.send_channel(self.admin_log_channel_id, embed=embeds.critical_embed(title, details))
        except Exception as e:
            self.audit.error("Failed to send critical alert to Discord", error=str(e))

    def activation_attempt(self, identity: Identity, code: str, result: ActivationResult) -> None:
        if not self.activation_log_channel_id:
            return
        embed = embeds.activation_attempt_embed(identity, code, result)
        self.spawn(self.send_channel(self.activation_log_channel_id, embed=embed))

    async def renewal_detected(self, discord_id: str, expired_order_id: Any, active_order_id: Any) -> None:
        await self.send_channel(
            self.admin_log_channel_id,
            embed=embeds.renewal_embed(discord_id, expired_order_id, active_order_id),
        )

    async def membership_removed(self, member: Any, reason: str, moderator: str) -> None:
        if not isinstance(member, discord.Member):
            return
        await self.send_channel(
            self.mod_log_channel_id,
            embed=embeds.mod_action_embed("Membership Removed", member, reason, moderator),
        )
