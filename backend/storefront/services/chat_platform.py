"""
Chat platform collaborator.

``ChatPlatform`` is the seam the services talk to; ``DiscordRestPlatform``
implements it against the Discord REST API with a sync httpx client.
Every failure surfaces as ChatPlatformError so callers can decide whether
the action was best-effort.
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import httpx

from storefront.core.config import settings
from storefront.core.errors import ChatPlatformError

logger = logging.getLogger(__name__)

# Discord permission bits
VIEW_CHANNEL = 1 << 10
SEND_MESSAGES = 1 << 11
READ_MESSAGE_HISTORY = 1 << 16
MANAGE_CHANNELS = 1 << 4

MEMBER_ACCESS = VIEW_CHANNEL | SEND_MESSAGES | READ_MESSAGE_HISTORY
BOT_ACCESS = MEMBER_ACCESS | MANAGE_CHANNELS

GUILD_TEXT = 0
GUILD_CATEGORY = 4


@dataclass(frozen=True)
class PermissionOverwrite:
    target_id: str
    kind: str  # 'role' or 'member'
    allow: int = 0
    deny: int = 0

    def to_payload(self) -> Dict:
        return {
            "id": self.target_id,
            "type": 0 if self.kind == "role" else 1,
            "allow": str(self.allow),
            "deny": str(self.deny),
        }


class ChatPlatform:
    """Operations the storefront needs from the chat platform"""

    @property
    def bot_user_id(self) -> str:
        raise NotImplementedError

    def channel_exists(self, channel_id: str) -> bool:
        raise NotImplementedError

    def find_channel(self, guild_id: str, name: str, channel_type: int = GUILD_TEXT) -> Optional[str]:
        raise NotImplementedError

    def create_channel(
        self,
        guild_id: str,
        name: str,
        overwrites: List[PermissionOverwrite],
        parent_id: Optional[str] = None,
        channel_type: int = GUILD_TEXT,
    ) -> str:
        raise NotImplementedError

    def delete_channel(self, channel_id: str, reason: Optional[str] = None) -> None:
        raise NotImplementedError

    def send_message(self, channel_id: str, payload: Dict) -> str:
        raise NotImplementedError

    def edit_message(self, channel_id: str, message_id: str, payload: Dict) -> bool:
        """Edit in place. Returns False when the message no longer exists."""
        raise NotImplementedError

    def send_dm(self, user_id: str, payload: Dict) -> str:
        raise NotImplementedError

    def add_role(self, guild_id: str, user_id: str, role_id: str, reason: Optional[str] = None) -> None:
        raise NotImplementedError

    def remove_role(self, guild_id: str, user_id: str, role_id: str, reason: Optional[str] = None) -> None:
        raise NotImplementedError

    def ensure_category(self, guild_id: str, name: str) -> str:
        existing = self.find_channel(guild_id, name, channel_type=GUILD_CATEGORY)
        if existing:
            return existing
        return self.create_channel(guild_id, name, [], channel_type=GUILD_CATEGORY)

    def close(self) -> None:
        pass


class DiscordRestPlatform(ChatPlatform):
    """Discord REST v10 client authenticated as the bot"""

    def __init__(self, token: Optional[str] = None, api_base: Optional[str] = None, timeout: Optional[float] = None):
        self._token = token or settings.DISCORD_BOT_TOKEN
        self._api_base = (api_base or settings.DISCORD_API_BASE).rstrip("/")
        self._timeout = timeout or settings.DISCORD_HTTP_TIMEOUT_SECONDS
        self._client: Optional[httpx.Client] = None
        self._bot_user_id: Optional[str] = settings.DISCORD_APPLICATION_ID or None

    @property
    def client(self) -> httpx.Client:
        """Lazy initialization of httpx client."""
        if self._client is None:
            self._client = httpx.Client(
                base_url=self._api_base,
                timeout=self._timeout,
                headers={
                    "Authorization": f"Bot {self._token}",
                    "User-Agent": "DiscordBot (storefront, 1.0)",
                },
            )
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def _api_call(
        self,
        method: str,
        path: str,
        json: Optional[Dict] = None,
        reason: Optional[str] = None,
        allow_404: bool = False,
    ) -> Optional[httpx.Response]:
        """Make API call to Discord. Returns None on 404 when ``allow_404`` is set."""
        headers = {"X-Audit-Log-Reason": reason[:512]} if reason else None
        try:
            resp = self.client.request(method, path, json=json, headers=headers)
        except httpx.HTTPError as e:
            logger.warning(f"Discord API transport error: {method} {path} -> {e}")
            raise ChatPlatformError("The chat platform is not responding right now.")

        if resp.status_code == 404 and allow_404:
            return None
        if resp.status_code >= 400:
            logger.warning(f"Discord API error: {method} {path} -> {resp.status_code}: {resp.text[:300]}")
            raise ChatPlatformError(f"Chat platform rejected {method} {path} ({resp.status_code})")
        return resp

    @property
    def bot_user_id(self) -> str:
        if not self._bot_user_id:
            resp = self._api_call("GET", "/users/@me")
            self._bot_user_id = resp.json()["id"]
        return self._bot_user_id

    def channel_exists(self, channel_id: str) -> bool:
        return self._api_call("GET", f"/channels/{channel_id}", allow_404=True) is not None

    def find_channel(self, guild_id: str, name: str, channel_type: int = GUILD_TEXT) -> Optional[str]:
        resp = self._api_call("GET", f"/guilds/{guild_id}/channels")
        for channel in resp.json():
            if channel.get("type") == channel_type and channel.get("name") == name:
                return channel["id"]
        return None

    def create_channel(
        self,
        guild_id: str,
        name: str,
        overwrites: List[PermissionOverwrite],
        parent_id: Optional[str] = None,
        channel_type: int = GUILD_TEXT,
    ) -> str:
        body = {
            "name": name,
            "type": channel_type,
            "permission_overwrites": [o.to_payload() for o in overwrites],
        }
        if parent_id:
            body["parent_id"] = parent_id
        resp = self._api_call("POST", f"/guilds/{guild_id}/channels", json=body)
        return resp.json()["id"]

    def delete_channel(self, channel_id: str, reason: Optional[str] = None) -> None:
        self._api_call("DELETE", f"/channels/{channel_id}", reason=reason, allow_404=True)

    def send_message(self, channel_id: str, payload: Dict) -> str:
        resp = self._api_call("POST", f"/channels/{channel_id}/messages", json=payload)
        return resp.json()["id"]

    def edit_message(self, channel_id: str, message_id: str, payload: Dict) -> bool:
        resp = self._api_call(
            "PATCH", f"/channels/{channel_id}/messages/{message_id}", json=payload, allow_404=True
        )
        return resp is not None

    def send_dm(self, user_id: str, payload: Dict) -> str:
        resp = self._api_call("POST", "/users/@me/channels", json={"recipient_id": user_id})
        return self.send_message(resp.json()["id"], payload)

    def add_role(self, guild_id: str, user_id: str, role_id: str, reason: Optional[str] = None) -> None:
        # PUT is idempotent on Discord's side; re-granting is a no-op
        self._api_call("PUT", f"/guilds/{guild_id}/members/{user_id}/roles/{role_id}", reason=reason)

    def remove_role(self, guild_id: str, user_id: str, role_id: str, reason: Optional[str] = None) -> None:
        self._api_call(
            "DELETE", f"/guilds/{guild_id}/members/{user_id}/roles/{role_id}", reason=reason, allow_404=True
        )


_platform: Optional[ChatPlatform] = None


def get_chat_platform() -> ChatPlatform:
    """FastAPI dependency returning the process-wide platform client"""
    global _platform
    if _platform is None:
        _platform = DiscordRestPlatform()
    return _platform
