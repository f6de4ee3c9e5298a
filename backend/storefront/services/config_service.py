"""Per-guild configuration with a bounded-staleness read cache"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storefront.core.config import settings
from storefront.models.guild_config import GuildConfig
from storefront.utils.dates import utcnow
from storefront.utils.ttl_cache import MISSING, TTLCache

logger = logging.getLogger(__name__)

CONFIG_FIELDS = frozenset({
    "support_role_id",
    "purchase_log_channel_id",
    "thanks_channel_id",
    "ticket_panel_channel_id",
    "ticket_panel_message_id",
})


@dataclass(frozen=True)
class GuildConfigSnapshot:
    """Detached copy of a GuildConfig row, safe to hold across sessions"""
    guild_id: str
    support_role_id: Optional[str] = None
    purchase_log_channel_id: Optional[str] = None
    thanks_channel_id: Optional[str] = None
    ticket_panel_channel_id: Optional[str] = None
    ticket_panel_message_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: GuildConfig) -> "GuildConfigSnapshot":
        return cls(guild_id=row.guild_id, **{f: getattr(row, f) for f in CONFIG_FIELDS})


class ConfigStore:
    """Read-through cache over guild_configs.

    A missing row is cached as None so repeated lookups for an
    unconfigured guild don't hit the database.
    """

    def __init__(self, cache: Optional[TTLCache] = None):
        self.cache = cache or TTLCache(
            settings.CONFIG_CACHE_TTL_SECONDS,
            max_entries=settings.CONFIG_CACHE_MAX_ENTRIES,
        )

    def get(self, db: Session, guild_id: str) -> Optional[GuildConfigSnapshot]:
        cached = self.cache.get(guild_id)
        if cached is not MISSING:
            return cached

        row = db.query(GuildConfig).filter(GuildConfig.guild_id == guild_id).first()
        snapshot = GuildConfigSnapshot.from_row(row) if row else None
        self.cache.set(guild_id, snapshot)
        return snapshot

    def upsert(self, db: Session, guild_id: str, **patch) -> GuildConfigSnapshot:
        """Merge the given fields into the guild's config, creating it if needed.

        Only the named columns are written, so concurrent upserts of
        different fields don't overwrite each other.
        """
        unknown = set(patch) - CONFIG_FIELDS
        if unknown:
            raise ValueError(f"Unknown config fields: {', '.join(sorted(unknown))}")

        values = dict(patch, updated_at=utcnow())
        updated = (
            db.query(GuildConfig)
            .filter(GuildConfig.guild_id == guild_id)
            .update(values, synchronize_session=False)
        )
        if not updated:
            try:
                with db.begin_nested():
                    db.add(GuildConfig(guild_id=guild_id, **patch))
            except IntegrityError:
                # Another writer created the row between our update and insert
                db.query(GuildConfig).filter(GuildConfig.guild_id == guild_id).update(
                    values, synchronize_session=False
                )
        db.commit()
        self.cache.invalidate(guild_id)

        logger.info(f"Guild {guild_id} config updated: {', '.join(sorted(patch))}")
        row = db.query(GuildConfig).filter(GuildConfig.guild_id == guild_id).one()
        db.refresh(row)
        return GuildConfigSnapshot.from_row(row)

    def invalidate(self, guild_id: str) -> None:
        self.cache.invalidate(guild_id)


config_store = ConfigStore()


def get_config(db: Session, guild_id: str) -> Optional[GuildConfigSnapshot]:
    return config_store.get(db, guild_id)


def upsert_config(db: Session, guild_id: str, **patch) -> GuildConfigSnapshot:
    return config_store.upsert(db, guild_id, **patch)
