"""Advisory per-actor cooldown for checkout-creating actions"""
import math
from typing import Optional

from storefront.core.config import settings
from storefront.core.errors import CooldownActive
from storefront.utils.ttl_cache import TTLCache


class Cooldown:
    """Set-if-absent keyed by (actor, action); the key expires after ``seconds``"""

    def __init__(self, seconds: Optional[float] = None, cache: Optional[TTLCache] = None):
        self.seconds = seconds if seconds is not None else settings.CHECKOUT_COOLDOWN_SECONDS
        self.cache = cache or TTLCache(self.seconds, max_entries=10_000)

    def hit(self, actor_id: str, action: str) -> None:
        """Claim the slot or raise CooldownActive with the time left"""
        key = (actor_id, action)
        if not self.cache.add(key, True, ttl=self.seconds):
            remaining = max(1, math.ceil(self.cache.expires_in(key)))
            raise CooldownActive(f"Slow down. Try again in {remaining}s.")

    def reset(self, actor_id: str, action: str) -> None:
        self.cache.invalidate((actor_id, action))


checkout_cooldown = Cooldown()
