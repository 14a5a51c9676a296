"""Startup wiring for an embedding process.

create_gateway() is the one place configuration turns into a running core:
it reads Config from the ADHERENCE_* environment (unless one is passed in),
installs logging with the configured format and level, and returns a
gateway bound to the given adapters.
"""

from __future__ import annotations

import logging

from adherence_core.application.gateway import AdherenceGateway
from adherence_core.config import Config
from adherence_core.domain.ports import AttachmentStore, ChangeFeed, Clock, RemoteStore
from adherence_core.infrastructure.clock import SystemClock
from adherence_core.logging import setup_logging

logger = logging.getLogger(__name__)


def create_gateway(
    store: RemoteStore,
    attachment_store: AttachmentStore,
    feed: ChangeFeed,
    clock: Clock | None = None,
    config: Config | None = None,
) -> AdherenceGateway:
    config = config or Config.from_env()
    setup_logging(config.log_format, config.log_level)

    logger.info("Adherence core starting")
    logger.info("Log format: %s, level: %s", config.log_format, config.log_level)
    logger.info(
        "Tolerance: %d min, window: %d days, timezone: %s",
        config.tolerance_minutes, config.window_days, config.timezone,
    )
    return AdherenceGateway(store, attachment_store, feed, clock or SystemClock(), config)
