"""
User-facing entry points: DM command parsing, reply texts, and the activation panel
(persistent button -> modal with one code field).
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional, Tuple

import discord
from discord import ui

from CTAMembership.models import ActivationCode, ActivationResult, Identity

if TYPE_CHECKING:
    from CTAMembership.main import CTAMembershipBot

log = logging.getLogger("cta-membership")

CMD_ACTIVATE = "activate"
CMD_STATUS = "status"

ACTIVATE_ALIASES = {"/activate", ".activate", "!activate", "/act", ".act", "!act"}
STATUS_ALIASES = {
    f"{prefix}{word}"
    for prefix in ("/", ".", "!")
    for word in ("expiry", "exp", "expires", "membership", "member")
}

PANEL_BUTTON_ID = "open-activate-modal"
MODAL_ID = "activate-modal"
MODAL_INPUT_ID = "activation_uuid"

USAGE_TEXT = "Usage: /activate <code>  (you can find your activation code in your order email)"
CHECKING_TEXT = "Checking your activation code..."

_NOT_FOUND_DM = (
    "No valid order found for that code, or it has already been used. "
    "If you believe this is an error, contact support."
)

# Claimed and unknown codes read the same to the user.
_DM_REPLIES = {
    ActivationCode.OK: "Activation successful — your role has been granted. Welcome!",
    ActivationCode.NOT_FOUND: _NOT_FOUND_DM,
    ActivationCode.ALREADY_USED: _NOT_FOUND_DM,
    ActivationCode.NOT_IN_GUILD: (
        "Please join the server using the permanent invite link first, then run /activate {code} again."
    ),
    ActivationCode.NO_ROLE_CONFIG: "Server role is not configured (MEMBER_ROLE_ID). Contact the admins.",
    ActivationCode.PERSIST_FAILED: "Activation succeeded but failed to persist to WooCommerce. Admins have been alerted.",
}

_MODAL_REPLIES = {
    ActivationCode.OK: "Activation successful — your role has been granted. Welcome!",
    ActivationCode.NOT_FOUND: "No valid order found for that code, or it has already been used.",
    ActivationCode.ALREADY_USED: "No valid order found for that code, or it has already been used.",
    ActivationCode.NOT_IN_GUILD: "You must join the server first before activating.",
    ActivationCode.NO_ROLE_CONFIG: "Server not configured correctly. Contact admins.",
    ActivationCode.PERSIST_FAILED: "Activation succeeded but failed to persist to WooCommerce. Admins have been alerted.",
}

_FALLBACK_REPLY = "An error occurred while activating your code. Please try again later."


def parse_dm_command(content: str) -> Optional[Tuple[str, Optional[str]]]:
    """("activate"|"status", argument) for a recognized DM command, else None."""
    parts = str(content or "").strip().split()
    if not parts:
        return None
    head = parts[0].lower()
    arg = parts[1] if len(parts) > 1 else None
    if head in ACTIVATE_ALIASES:
        return CMD_ACTIVATE, arg
    if head in STATUS_ALIASES:
        return CMD_STATUS, arg
    return None


def dm_reply(result: ActivationResult, code: str) -> str:
    return _DM_REPLIES.get(result.code, _FALLBACK_REPLY).format(code=code)


def modal_reply(result: ActivationResult) -> str:
    return _MODAL_REPLIES.get(result.code, _FALLBACK_REPLY)


class ActivationModal(ui.Modal, title="Enter your activation code"):
    code_input = ui.TextInput(
        label="Activation code (UUID)",
        placeholder="e.g. 3f6b9d7a-...",
        style=discord.TextStyle.short,
        custom_id=MODAL_INPUT_ID,
        max_length=100,
        required=True,
    )

    def __init__(self, bot_instance: "CTAMembershipBot"):
        super().__init__(custom_id=MODAL_ID)
        self.bot_instance = bot_instance

    async def on_submit(self, interaction: discord.Interaction):
        code = str(self.code_input.value or "").strip()
        await interaction.response.defer(ephemeral=True, thinking=True)
        try:
            result = await self.bot_instance.activator.activate(code, Identity.from_user(interaction.user))
            if result.success:
                await self.bot_instance.post_temp_notice(interaction.user, code)
            await interaction.followup.send(modal_reply(result), ephemeral=True)
        except Exception as e:
            self.bot_instance.audit.error(
                "Error processing activation modal submit", userId=str(interaction.user.id), error=str(e)
            )
            await interaction.followup.send("An unexpected error occurred. Please try again later.", ephemeral=True)


class ActivationPanelView(ui.View):
    """Persistent panel button; re-registered with add_view() on every start."""

    def __init__(self, bot_instance: "CTAMembershipBot"):
        super().__init__(timeout=None)
        self.bot_instance = bot_instance

    @ui.button(label="Aktivasi sekarang", style=discord.ButtonStyle.primary, custom_id=PANEL_BUTTON_ID)
    async def open_modal(self, interaction: discord.Interaction, button: ui.Button):
        try:
            await interaction.response.send_modal(ActivationModal(self.bot_instance))
        except discord.DiscordException as e:
            self.bot_instance.audit.error("Error opening activation modal", userId=str(interaction.user.id), error=str(e))
