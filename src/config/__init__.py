"""Configuration loading for the relay and the indexer.

Configuration is loaded from a single YAML file (``config/config.yaml`` by
default, ``STREAMINDEX_CONFIG`` or ``--config`` to override).

Usage:
    >>> from config import load_config
    >>> config = load_config()
    >>> topic = config.get_topic("changes")
    >>> consumer = config.get_worker_config("indexer", "consumer")

Settings are merged in the following priority (highest to lowest):

1. ``${VAR}`` environment references inside the YAML values
2. Worker-specific sections (``kafka.indexer.consumer``)
3. Shared defaults (``kafka.consumer_defaults``)
4. Dataclass defaults
"""

from config.config import (
    FeedConfig,
    SearchConfig,
    StreamConfig,
    get_config,
    load_config,
    reset_config,
    set_config,
)

__all__ = [
    "load_config",
    "get_config",
    "set_config",
    "reset_config",
    "StreamConfig",
    "FeedConfig",
    "SearchConfig",
]
