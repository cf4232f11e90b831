#!/usr/bin/env python3
"""
CTA Membership Bot
------------------
Discord bot that activates paid memberships from one-time codes and retires them on expiry.

Configuration is split across:
- config.json (non-secret settings)
- config.secrets.json (server-only secrets, not committed)

Runs three surfaces in one event loop: DM commands + the activation panel, daily
expiry/reminder loops, and the admin HTTP API.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

import discord
from aiohttp import web
from discord.ext import commands, tasks

from cta_config import mask_secret

from CTAMembership import embeds
from CTAMembership.admin_api import build_admin_app, start_admin_server, stop_admin_server
from CTAMembership.audit_log import AuditLog
from CTAMembership.claims import ClaimMutator, MembershipActivator
from CTAMembership.expiry import ExpiryReminder, ExpiryScanner, find_active_order, membership_status_message
from CTAMembership.models import Identity
from CTAMembership.notifier import DiscordNotifier, SendGridEmailSender
from CTAMembership.renewal import RenewalReconciler, run_expiry_check
from CTAMembership.resolver import ActivationResolver
from CTAMembership.roles import DiscordRoleGrantor
from CTAMembership.settings import BASE_DIR, BotSettings, load_settings
from CTAMembership.views import (
    CHECKING_TEXT,
    CMD_ACTIVATE,
    USAGE_TEXT,
    ActivationPanelView,
    dm_reply,
    parse_dm_command,
)
from CTAMembership.webinar_ledger import FileLedgerLock, WebinarLedger
from CTAMembership.woo_api_client import WooAPIClient

log = logging.getLogger("cta-membership")


def setup_logging(settings: BotSettings) -> None:
    """Console + size-rotating file handler; discord.py internals quieted."""
    level = getattr(logging, settings.log_level, logging.INFO)
    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    root = logging.getLogger()
    root.setLevel(level)

    ch = logging.StreamHandler(sys.stdout)
    ch.setFormatter(fmt)
    root.addHandler(ch)

    try:
        settings.log_file.parent.mkdir(parents=True, exist_ok=True)
        fh = RotatingFileHandler(settings.log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8")
        fh.setFormatter(fmt)
        root.addHandler(fh)
    except OSError as e:
        # Console logging still works.
        log.warning(f"File logging disabled ({settings.log_file}): {e}")

    for name in ("discord", "discord.http", "discord.gateway"):
        logging.getLogger(name).setLevel(logging.WARNING)


class CTAMembershipBot:
    """Wires the membership components to one Discord client."""

    def __init__(self, settings: BotSettings):
        self.settings = settings
        self.audit = AuditLog(settings.audit_log_file)

        intents = discord.Intents.none()
        intents.guilds = True
        intents.members = True
        intents.messages = True
        intents.dm_messages = True
        intents.message_content = True
        self.bot = commands.Bot(command_prefix="!", intents=intents, help_command=None)

        self.admin_runner: Optional[web.AppRunner] = None
        self._panel_posted = False

        self.notifier = DiscordNotifier(
            self.bot,
            self.audit,
            admin_log_channel_id=settings.admin_log_channel_id,
            activation_log_channel_id=settings.activation_log_channel_id,
            mod_log_channel_id=settings.mod_log_channel_id,
        )
        self.email = SendGridEmailSender(settings.sendgrid_api_key, settings.email_from, settings.email_from_name)
        self.orders = WooAPIClient(
            settings.woo_base_url,
            settings.woo_consumer_key,
            settings.woo_consumer_secret,
            code_key=settings.woo_code_key,
            audit=self.audit,
        )
        self.ledger = WebinarLedger(
            settings.webinar_ledger_path,
            lock=FileLedgerLock(
                settings.webinar_ledger_path.with_suffix(settings.webinar_ledger_path.suffix + ".lock"),
                timeout=settings.lock_timeout_seconds,
                poll_interval=settings.lock_poll_seconds,
            ),
        )
        self.roles = DiscordRoleGrantor(self.bot, settings.guild_id or 0)
        self.mutator = ClaimMutator(
            self.orders,
            self.roles,
            self.notifier,
            self.audit,
            member_role_id=settings.member_role_id,
            lifetime_role_id=settings.lifetime_role_id,
        )
        self.resolver = ActivationResolver(
            self.orders,
            self.ledger,
            self.audit,
            page_size=settings.woo_page_size,
            renewal_links=settings.renewal_links,
        )
        self.activator = MembershipActivator(self.resolver, self.mutator, self.notifier, self.audit)
        self.scanner = ExpiryScanner(
            self.orders, self.audit, tz_offset_hours=settings.tz_offset_hours, page_size=settings.woo_page_size
        )
        self.reconciler = RenewalReconciler(
            self.orders, self.mutator, self.notifier, self.audit, page_size=settings.woo_page_size
        )
        self.reminder = ExpiryReminder(self.scanner, self.notifier, self.email, self.audit, settings.renewal_links)

        self.expiry_loop = tasks.loop(time=settings.expiry_check_time.replace(tzinfo=timezone.utc))(self._expiry_tick)
        self.reminder_loop = tasks.loop(time=settings.reminder_time.replace(tzinfo=timezone.utc))(self._reminder_tick)

        self._setup_events()

    # -----------------------------
    # Jobs
    # -----------------------------
    async def run_expiry_check(self) -> Dict[str, Any]:
        return await run_expiry_check(self.scanner, self.reconciler, self.audit, self.notifier)

    async def run_expiry_reminder(self) -> Dict[str, Any]:
        return await self.reminder.run()

    async def _expiry_tick(self):
        result = await self.run_expiry_check()
        log.info(f"Scheduled expiry check finished: {result.get('count', 0)} orders (success={result.get('success')})")

    async def _reminder_tick(self):
        result = await self.run_expiry_reminder()
        log.info(f"Scheduled expiry reminder finished: {result.get('count', 0)} orders (success={result.get('success')})")

    # -----------------------------
    # Activation helpers
    # -----------------------------
    async def post_temp_notice(self, user: discord.abc.User, code: str) -> None:
        """Short-lived notice in the activation channel (deleted after the TTL)."""
        if not self.settings.activation_channel_id:
            return
        if self.settings.show_code_in_channel:
            content = f"{user} submitted code: `{code}`"
        else:
            content = f"{user} submitted an activation code"
        msg = await self.notifier.send_channel(self.settings.activation_channel_id, content=content)
        if msg is None:
            self.audit.warning("Failed to post temporary activation message", userId=str(user.id))
            return
        try:
            await msg.delete(delay=float(self.settings.temp_message_ttl_seconds))
        except discord.DiscordException as e:
            log.debug(f"Temp activation notice delete failed: {e}")

    async def post_activation_panel(self) -> None:
        if self._panel_posted or not self.settings.activation_channel_id:
            return
        msg = await self.notifier.send_channel(
            self.settings.activation_channel_id,
            embed=embeds.activation_panel_embed(),
            view=ActivationPanelView(self),
        )
        if msg is not None:
            self._panel_posted = True
            self.audit.info("Activation panel posted", channelId=self.settings.activation_channel_id)

    async def handle_dm(self, message: discord.Message) -> None:
        parsed = parse_dm_command(message.content)
        if parsed is None:
            return
        command, arg = parsed
        user = message.author

        if command == CMD_ACTIVATE:
            if not arg:
                await message.reply(USAGE_TEXT)
                return
            await message.reply(CHECKING_TEXT)
            result = await self.activator.activate(arg, Identity.from_user(user))
            await message.reply(dm_reply(result, arg))
            return

        try:
            order = await find_active_order(self.orders, user.id, page_size=self.settings.woo_page_size)
        except Exception as e:
            self.audit.error("Error fetching membership status", userId=str(user.id), error=str(e))
            await message.reply("Could not check your membership right now. Please try again later.")
            return
        await message.reply(membership_status_message(order, self.settings.tz_offset_hours))

    # -----------------------------
    # Events
    # -----------------------------
    def _setup_events(self):
        @self.bot.event
        async def setup_hook():
            # Persistent panel button survives restarts.
            self.bot.add_view(ActivationPanelView(self))

        @self.bot.event
        async def on_ready():
            log.info(f"Logged in as {self.bot.user} ({self.bot.user.id if self.bot.user else '?'})")
            if self.settings.guild_id and self.bot.get_guild(self.settings.guild_id) is None:
                log.warning(f"Guild not found (ID: {self.settings.guild_id})")

            await self.post_activation_panel()

            if self.admin_runner is None:
                app = build_admin_app(
                    api_secret=self.settings.admin_api_secret,
                    run_expiry_check=self.run_expiry_check,
                    run_expiry_reminder=self.run_expiry_reminder,
                    revoke=self.mutator.revoke,
                    audit=self.audit,
                )
                try:
                    self.admin_runner = await start_admin_server(app, self.settings.admin_host, self.settings.admin_port)
                except OSError as e:
                    self.audit.error("Admin HTTP server failed to start", port=self.settings.admin_port, error=str(e))

            if not self.expiry_loop.is_running():
                self.expiry_loop.start()
            if not self.reminder_loop.is_running():
                self.reminder_loop.start()
            self.audit.info("Bot ready", user=str(self.bot.user))

        @self.bot.event
        async def on_message(message: discord.Message):
            if message.author.bot:
                return
            if message.content.strip() == "!ping":
                await message.reply("Pong!")
                self.audit.info("Ping command", userId=str(message.author.id))
                return
            if isinstance(message.channel, discord.DMChannel):
                try:
                    await self.handle_dm(message)
                except Exception as e:
                    self.audit.error("Error handling DM command", userId=str(message.author.id), error=str(e))
                    try:
                        await message.reply("An unexpected error occurred. Please try again later.")
                    except discord.DiscordException:
                        pass
                return

        @self.bot.event
        async def on_member_join(member: discord.Member):
            if self.settings.guild_id and member.guild.id != self.settings.guild_id:
                return
            self.audit.info("Member joined", userId=str(member.id), userTag=str(member))
            if self.settings.audit_channel_id:
                await self.notifier.send_channel(self.settings.audit_channel_id, embed=embeds.member_join_embed(member))
            if self.settings.welcome_channel_id:
                await self.notifier.send_channel(
                    self.settings.welcome_channel_id, content=f"👋 Welcome {member.mention}, thanks for joining!"
                )

    # -----------------------------
    # Lifecycle
    # -----------------------------
    async def start(self) -> None:
        try:
            await self.bot.start(self.settings.bot_token)
        finally:
            if self.expiry_loop.is_running():
                self.expiry_loop.cancel()
            if self.reminder_loop.is_running():
                self.reminder_loop.cancel()
            await stop_admin_server(self.admin_runner)
            if not self.bot.is_closed():
                await self.bot.close()


def check_config(base_dir: Path = BASE_DIR) -> int:
    settings, missing, secrets_path = load_settings(base_dir)
    errors = []
    if not secrets_path.exists():
        errors.append(f"Missing secrets file: {secrets_path}")
    for key in missing:
        errors.append(f"{key} missing/placeholder in config.secrets.json")
    if not settings.guild_id:
        errors.append("guild_id missing in config.json")
    if not settings.member_role_id:
        errors.append("roles.member_role_id missing in config.json")
    if not settings.woo_base_url:
        errors.append("woocommerce.base_url missing in config.json")
    if errors:
        print("[ConfigCheck] FAILED")
        for e in errors:
            print(f"- {e}")
        return 1
    print("[ConfigCheck] OK")
    print(f"- secrets: {secrets_path}")
    print(f"- bot_token: {mask_secret(settings.bot_token)}")
    print(f"- woocommerce: {settings.woo_base_url} (key {mask_secret(settings.woo_consumer_key)})")
    print(f"- webinar ledger: {settings.webinar_ledger_path}")
    print(f"- tz offset: {settings.tz_offset_hours}h, check {settings.expiry_check_time}, reminder {settings.reminder_time} UTC")
    return 0


def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(add_help=True)
    parser.add_argument("--check-config", action="store_true", help="Validate config + secrets and exit (no Discord connection).")
    args = parser.parse_args()

    if args.check_config:
        sys.exit(check_config())

    settings, missing, secrets_path = load_settings()
    if not secrets_path.exists():
        print(f"[Config] ERROR: missing secrets file: {secrets_path}")
        sys.exit(1)
    if "bot_token" in missing:
        print("[Config] ERROR: 'bot_token' is required in config.secrets.json (server-only)")
        sys.exit(1)

    setup_logging(settings)
    try:
        bot = CTAMembershipBot(settings)
    except ValueError as e:
        print(f"[Config] ERROR: {e}")
        sys.exit(1)
    try:
        asyncio.run(bot.start())
    except KeyboardInterrupt:
        log.info("Stopped")


if __name__ == "__main__":
    main()
