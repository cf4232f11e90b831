from __future__ import annotations

from dataclasses import dataclass, field
from datetime import time
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from cta_config import load_config_with_secrets, missing_secrets

from CTAMembership.models import META_ACTIVATION_UUID, RenewalLinks

BASE_DIR = Path(__file__).resolve().parent

ENV_OVERRIDES = {
    "CTA_TZ_OFFSET_HOURS": "expiry.tz_offset_hours",
    "CTA_AUDIT_LOG_FILE": "logging.audit_log_file",
    "CTA_LOG_LEVEL": "logging.level",
}

REQUIRED_SECRETS = [
    "bot_token",
    "woocommerce.consumer_key",
    "woocommerce.consumer_secret",
    "admin_api.api_secret",
]


def _int_or_none(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    s = str(value).strip()
    return int(s) if s.lstrip("-").isdigit() else None


def _parse_hhmm(value: Any, default: time) -> time:
    try:
        hh, mm = str(value).strip().split(":", 1)
        return time(hour=int(hh), minute=int(mm))
    except (ValueError, TypeError):
        return default


def _section(config: Mapping[str, Any], name: str) -> Dict[str, Any]:
    sec = config.get(name)
    return sec if isinstance(sec, dict) else {}


@dataclass
class BotSettings:
    bot_token: str = ""
    guild_id: Optional[int] = None
    member_role_id: Optional[int] = None
    lifetime_role_id: Optional[int] = None

    admin_log_channel_id: Optional[int] = None
    activation_log_channel_id: Optional[int] = None
    activation_channel_id: Optional[int] = None
    audit_channel_id: Optional[int] = None
    welcome_channel_id: Optional[int] = None
    mod_log_channel_id: Optional[int] = None

    woo_base_url: str = ""
    woo_consumer_key: str = ""
    woo_consumer_secret: str = ""
    woo_code_key: str = META_ACTIVATION_UUID
    woo_page_size: int = 100

    webinar_ledger_path: Path = BASE_DIR / "data" / "webinar.csv"
    lock_timeout_seconds: float = 10.0
    lock_poll_seconds: float = 0.1

    tz_offset_hours: int = 7
    expiry_check_time: time = time(hour=5, minute=0)
    reminder_time: time = time(hour=2, minute=0)

    renewal_links: RenewalLinks = field(default_factory=RenewalLinks)

    sendgrid_api_key: str = ""
    email_from: str = ""
    email_from_name: str = ""

    admin_host: str = "0.0.0.0"
    admin_port: int = 3000
    admin_api_secret: str = ""

    show_code_in_channel: bool = False
    temp_message_ttl_seconds: int = 8

    log_file: Path = BASE_DIR / "logs" / "cta_membership.log"
    audit_log_file: Path = BASE_DIR / "logs" / "bot-activity.jsonl"
    log_level: str = "INFO"

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any], base_dir: Path = BASE_DIR) -> "BotSettings":
        roles = _section(config, "roles")
        channels = _section(config, "channels")
        woo = _section(config, "woocommerce")
        webinar = _section(config, "webinar")
        expiry = _section(config, "expiry")
        links = _section(config, "renewal_links")
        email = _section(config, "email")
        api = _section(config, "admin_api")
        activation = _section(config, "activation")
        logging_cfg = _section(config, "logging")

        def _path(value: Any, default: Path) -> Path:
            if not value:
                return default
            p = Path(str(value)).expanduser()
            return p if p.is_absolute() else base_dir / p

        defaults = cls()
        return cls(
            bot_token=str(config.get("bot_token") or "").strip(),
            guild_id=_int_or_none(config.get("guild_id")),
            member_role_id=_int_or_none(roles.get("member_role_id")),
            lifetime_role_id=_int_or_none(roles.get("lifetime_role_id")),
            admin_log_channel_id=_int_or_none(channels.get("admin_log")),
            activation_log_channel_id=_int_or_none(channels.get("activation_log")),
            activation_channel_id=_int_or_none(channels.get("activation")),
            audit_channel_id=_int_or_none(channels.get("audit")),
            welcome_channel_id=_int_or_none(channels.get("welcome")),
            mod_log_channel_id=_int_or_none(channels.get("mod_log")),
            woo_base_url=str(woo.get("base_url") or "").strip(),
            woo_consumer_key=str(woo.get("consumer_key") or "").strip(),
            woo_consumer_secret=str(woo.get("consumer_secret") or "").strip(),
            woo_code_key=str(woo.get("uuid_meta_key") or META_ACTIVATION_UUID),
            woo_page_size=int(woo.get("page_size") or defaults.woo_page_size),
            webinar_ledger_path=_path(webinar.get("ledger_path"), defaults.webinar_ledger_path),
            lock_timeout_seconds=float(webinar.get("lock_timeout_seconds") or defaults.lock_timeout_seconds),
            lock_poll_seconds=float(webinar.get("lock_poll_seconds") or defaults.lock_poll_seconds),
            tz_offset_hours=int(expiry.get("tz_offset_hours", defaults.tz_offset_hours)),
            expiry_check_time=_parse_hhmm(expiry.get("check_time_utc"), defaults.expiry_check_time),
            reminder_time=_parse_hhmm(expiry.get("reminder_time_utc"), defaults.reminder_time),
            renewal_links=RenewalLinks(
                three_month=str(links.get("three_month") or ""),
                twelve_month=str(links.get("twelve_month") or ""),
            ),
            sendgrid_api_key=str(email.get("sendgrid_api_key") or "").strip(),
            email_from=str(email.get("from_email") or "").strip(),
            email_from_name=str(email.get("from_name") or "").strip(),
            admin_host=str(api.get("host") or defaults.admin_host),
            admin_port=int(api.get("port") or defaults.admin_port),
            admin_api_secret=str(api.get("api_secret") or "").strip(),
            show_code_in_channel=bool(activation.get("show_code_in_channel", False)),
            temp_message_ttl_seconds=int(activation.get("temp_message_ttl_seconds") or defaults.temp_message_ttl_seconds),
            log_file=_path(logging_cfg.get("log_file"), defaults.log_file),
            audit_log_file=_path(logging_cfg.get("audit_log_file"), defaults.audit_log_file),
            log_level=str(logging_cfg.get("level") or defaults.log_level).upper(),
        )


def load_settings(base_dir: Path = BASE_DIR) -> tuple[BotSettings, list[str], Path]:
    """Load settings from config.json + config.secrets.json (+ env).

    Returns: (settings, missing_secret_keys, secrets_path)
    """
    config, _, secrets_path = load_config_with_secrets(base_dir, env_map=ENV_OVERRIDES)
    missing = missing_secrets(config, REQUIRED_SECRETS)
    return BotSettings.from_mapping(config, base_dir), missing, secrets_path
