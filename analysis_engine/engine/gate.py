"""Configuration-driven feature gate."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from analysis_engine.config.settings import FeaturesConfig
from analysis_engine.scheduling.clock import Clock, SystemClock, utc_datetime
from analysis_engine.utils.logging import get_logger

if TYPE_CHECKING:
    from analysis_engine.storage.store import KeyValueStore

logger = get_logger("engine.gate")


class ConfigFeatureGate:
    """
    Feature gate backed by the `features:` configuration section.

    Used when the embedding system does not provide its own subscription
    checks. Daily usage is a counter per UTC day in the shared store.
    """

    USAGE_PREFIX = "usage:analyses"

    def __init__(
        self,
        config: FeaturesConfig,
        store: KeyValueStore,
        clock: Optional[Clock] = None,
    ) -> None:
        self.config = config
        self.store = store
        self.clock = clock or SystemClock()

    def _usage_key(self) -> str:
        day = utc_datetime(self.clock.now()).strftime("%Y-%m-%d")
        return f"{self.USAGE_PREFIX}:{day}"

    def is_module_enabled(self) -> bool:
        return self.config.module_enabled

    def is_feature_enabled(self, feature: str) -> bool:
        return self.config.module_enabled and feature not in self.config.disabled

    def usage_today(self) -> int:
        return int(self.store.load(self._usage_key(), 0))

    def has_remaining_usage(self) -> bool:
        limit = self.config.analyses_per_day
        if limit <= 0:
            return True
        return self.usage_today() < limit

    def increment_usage(self) -> int:
        now = self.clock.now()
        used = self.store.increment(self._usage_key(), ttl=86400 - (now % 86400))
        logger.debug("usage_incremented", used=used, limit=self.config.analyses_per_day)
        return used
