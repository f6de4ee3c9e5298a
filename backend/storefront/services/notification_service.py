"""Purchase log, thanks channel, DMs and role changes

Everything here except ``ensure_purchase_log_channel`` is best-effort: a
chat platform failure is logged and counted, never raised, so it can't
undo a state transition that already happened.
"""
import logging
from typing import Dict, Optional

from sqlalchemy.orm import Session

from storefront.core.config import settings
from storefront.core.errors import ChatPlatformError
from storefront.core.metrics import platform_failures_counter
from storefront.services import views
from storefront.services.chat_platform import (
    BOT_ACCESS,
    VIEW_CHANNEL,
    ChatPlatform,
    PermissionOverwrite,
)
from storefront.services.config_service import get_config, upsert_config

logger = logging.getLogger(__name__)


def _failed(action: str, e: Exception, detail: str) -> None:
    platform_failures_counter.labels(action=action).inc()
    logger.warning(f"{action} failed ({detail}): {e}")


def ensure_purchase_log_channel(db: Session, platform: ChatPlatform, guild_id: str) -> str:
    """Configured log channel, else an existing #purchase-log, else a new private one"""
    cfg = get_config(db, guild_id)
    if cfg and cfg.purchase_log_channel_id and platform.channel_exists(cfg.purchase_log_channel_id):
        return cfg.purchase_log_channel_id

    channel_id = platform.find_channel(guild_id, settings.PURCHASE_LOG_CHANNEL_NAME)
    if not channel_id:
        channel_id = platform.create_channel(
            guild_id,
            settings.PURCHASE_LOG_CHANNEL_NAME,
            [
                # @everyone shares the guild's id
                PermissionOverwrite(guild_id, "role", deny=VIEW_CHANNEL),
                PermissionOverwrite(platform.bot_user_id, "member", allow=BOT_ACCESS),
            ],
        )
        logger.info(f"Created purchase log channel {channel_id} in guild {guild_id}")
    upsert_config(db, guild_id, purchase_log_channel_id=channel_id)
    return channel_id


def post_purchase_log(db: Session, platform: ChatPlatform, guild_id: str, payload: Dict) -> Optional[str]:
    try:
        channel_id = ensure_purchase_log_channel(db, platform, guild_id)
        return platform.send_message(channel_id, payload)
    except ChatPlatformError as e:
        _failed("purchase_log", e, f"guild {guild_id}")
        return None


def send_thanks(db: Session, platform: ChatPlatform, guild_id: str, user_id: str, purchase_id: str) -> bool:
    cfg = get_config(db, guild_id)
    if not cfg or not cfg.thanks_channel_id:
        return False
    try:
        platform.send_message(cfg.thanks_channel_id, views.thanks(user_id, purchase_id))
        return True
    except ChatPlatformError as e:
        _failed("thanks", e, f"purchase {purchase_id}")
        return False


def dm_user(platform: ChatPlatform, user_id: str, payload: Dict) -> bool:
    try:
        platform.send_dm(user_id, payload)
        return True
    except ChatPlatformError as e:
        # Users with closed DMs are common
        _failed("dm", e, f"user {user_id}")
        return False


def grant_role(platform: ChatPlatform, guild_id: str, user_id: str, role_id: str, reason: str) -> bool:
    try:
        platform.add_role(guild_id, user_id, role_id, reason=reason)
        return True
    except ChatPlatformError as e:
        _failed("role_grant", e, f"user {user_id} role {role_id}")
        return False


def remove_role(platform: ChatPlatform, guild_id: str, user_id: str, role_id: str, reason: str) -> bool:
    try:
        platform.remove_role(guild_id, user_id, role_id, reason=reason)
        return True
    except ChatPlatformError as e:
        _failed("role_remove", e, f"user {user_id} role {role_id}")
        return False


def rerender_message(platform: ChatPlatform, channel_id: Optional[str], message_id: Optional[str], payload: Dict) -> bool:
    if not channel_id or not message_id:
        return False
    try:
        return platform.edit_message(channel_id, message_id, payload)
    except ChatPlatformError as e:
        _failed("rerender", e, f"message {message_id}")
        return False
