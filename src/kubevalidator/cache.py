from datetime import datetime
import logging

import diskcache

from kubevalidator import config

logger = logging.getLogger("kubevalidator")


class Cache(diskcache.Cache):
    """Process-safe record of the check suites currently being validated."""

    in_flight_key: str = "in_flight"

    def claim(self, key: str) -> bool:
        """Mark ``key`` as in flight; False if another delivery already holds it."""
        # add() only writes when the key is absent, atomically across processes
        claimed = self.add(
            f"{self.in_flight_key}_{key}", datetime.now(), expire=config.SUITE_GUARD_TTL
        )
        if not claimed:
            logger.info("%s already in flight, skipping", key)
        return claimed

    def release(self, key: str) -> None:
        self.delete(f"{self.in_flight_key}_{key}")

    def in_flight(self, key: str) -> bool:
        return f"{self.in_flight_key}_{key}" in self


def get_cache() -> Cache:
    logger.debug("Opening cache dir: %s", config.DISKCACHE_DIR)
    return Cache(config.DISKCACHE_DIR)
