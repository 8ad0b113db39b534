"""Stream indexing configuration from YAML file.

Loads from config/config.yaml with all settings in one place:
- Shared Kafka connection settings and defaults
- Relay and indexer worker overrides
- Change feed and search index settings

Environment variables ARE supported using ${VAR_NAME} and ${VAR_NAME:-default}
syntax in YAML files.
"""

import json
import logging
import os
import re
import sys
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file and return dict."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def _expand_env_vars(data: Any) -> Any:
    """Recursively expand ${VAR_NAME} and ${VAR_NAME:-default} environment variables in config data."""
    if isinstance(data, dict):
        return {key: _expand_env_vars(value) for key, value in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item) for item in data]
    elif isinstance(data, str):
        pattern = r"\$\{([^}:]+)(?::-(([^}]*))?)?\}"

        def replacer(match):
            var_name = match.group(1)
            default_value = match.group(2) if match.group(2) is not None else match.group(0)
            return os.getenv(var_name, default_value)

        return re.sub(pattern, replacer, data)
    else:
        return data


def _deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge overlay into base dict."""
    result = base.copy()
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _as_bool(value: Any) -> bool:
    # YAML env expansion hands us strings like "false"
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes", "on")


DEFAULT_CONFIG_FILE = Path(__file__).parent.parent / "config" / "config.yaml"

DEFAULT_FEED_URL = "https://stream.wikimedia.org/v2/stream/recentchange"
DEFAULT_TOPIC = "wikimedia_recentchange"
DEFAULT_INDEX = "wikimedia"
DEFAULT_CONSUMER_GROUP = "consumer-opensearch"

WORKER_NAMES = ("relay", "indexer")
ID_STRATEGIES = ("event", "coordinates")


@dataclass
class FeedConfig:
    """Change feed (Server-Sent Events) settings."""

    url: str = DEFAULT_FEED_URL
    user_agent: str = "streamindex/0.1"
    reconnect_delay_seconds: float = 3.0
    max_reconnect_delay_seconds: float = 60.0
    read_timeout_seconds: float = 60.0
    # 0 runs until shutdown
    max_runtime_seconds: float = 0.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeedConfig":
        return cls(
            url=data.get("url") or DEFAULT_FEED_URL,
            user_agent=data.get("user_agent", cls.user_agent),
            reconnect_delay_seconds=float(data.get("reconnect_delay_seconds", cls.reconnect_delay_seconds)),
            max_reconnect_delay_seconds=float(
                data.get("max_reconnect_delay_seconds", cls.max_reconnect_delay_seconds)
            ),
            read_timeout_seconds=float(data.get("read_timeout_seconds", cls.read_timeout_seconds)),
            max_runtime_seconds=float(data.get("max_runtime_seconds") or 0),
        )


@dataclass
class SearchConfig:
    """Search index connection settings.

    ``url`` may embed ``user:password@`` credentials; they are sent as HTTP
    basic auth.
    """

    url: str = "http://localhost:9200"
    index: str = DEFAULT_INDEX
    timeout_seconds: float = 10.0
    verify_ssl: bool = True
    retry: Dict[str, Any] = field(default_factory=dict)
    # Optional {"settings": ..., "mappings": ...} sent on index creation
    index_body: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SearchConfig":
        return cls(
            url=data.get("url", cls.url),
            index=data.get("index", DEFAULT_INDEX),
            timeout_seconds=float(data.get("timeout_seconds", cls.timeout_seconds)),
            verify_ssl=_as_bool(data.get("verify_ssl", True)),
            retry=data.get("retry") or {},
            index_body=data.get("index_body") or {},
        )


@dataclass
class StreamConfig:
    """Relay and indexer configuration.

    Configuration structure:
        kafka:
          connection: {...}           # Shared connection settings
          consumer_defaults: {...}    # Default consumer settings
          producer_defaults: {...}    # Default producer settings
          topics:
            changes: ...              # The single change feed topic
          relay:
            producer: {...}
            processing: {...}
          indexer:
            consumer: {...}
            processing: {...}
        feed: {...}
        search: {...}

    All timing values in milliseconds unless otherwise noted.
    """

    # =========================================================================
    # CONNECTION SETTINGS (shared across all consumers/producers)
    # =========================================================================
    bootstrap_servers: str = ""
    security_protocol: str = "PLAINTEXT"
    sasl_mechanism: str = "PLAIN"
    sasl_plain_username: str = ""
    sasl_plain_password: str = ""
    request_timeout_ms: int = 120000  # 2 minutes
    metadata_max_age_ms: int = 300000  # 5 minutes
    connections_max_idle_ms: int = 540000  # 9 minutes

    # =========================================================================
    # DEFAULT SETTINGS (applied to all consumers/producers unless overridden)
    # =========================================================================
    consumer_defaults: Dict[str, Any] = field(default_factory=dict)
    producer_defaults: Dict[str, Any] = field(default_factory=dict)

    # =========================================================================
    # TOPICS AND WORKERS
    # =========================================================================
    topics: Dict[str, str] = field(default_factory=lambda: {"changes": DEFAULT_TOPIC})
    relay: Dict[str, Any] = field(default_factory=dict)
    indexer: Dict[str, Any] = field(default_factory=dict)

    # =========================================================================
    # EXTERNAL SERVICES
    # =========================================================================
    feed: FeedConfig = field(default_factory=FeedConfig)
    search: SearchConfig = field(default_factory=SearchConfig)

    def _worker_section(self, worker_name: str) -> Dict[str, Any]:
        if worker_name not in WORKER_NAMES:
            raise ValueError(f"Unknown worker: {worker_name}. Must be one of {list(WORKER_NAMES)}")
        return getattr(self, worker_name) or {}

    def get_worker_config(
        self,
        worker_name: str,
        component: str,  # "consumer", "producer", or "processing"
    ) -> Dict[str, Any]:
        """Get merged configuration for a specific worker's component.

        Merge priority (highest to lowest):
        1. Worker-specific config (e.g., indexer.consumer)
        2. Default config (consumer_defaults or producer_defaults)
        """
        if component == "consumer":
            result = self.consumer_defaults.copy()
        elif component == "producer":
            result = self.producer_defaults.copy()
        elif component == "processing":
            result = {}
        else:
            raise ValueError(
                f"Invalid component: {component}. Must be 'consumer', 'producer', or 'processing'"
            )

        result.update(self._worker_section(worker_name).get(component, {}))
        return result

    def get_topic(self, topic_key: str = "changes") -> str:
        if topic_key not in self.topics:
            raise ValueError(
                f"Topic '{topic_key}' not configured. Available topics: {list(self.topics.keys())}"
            )
        return self.topics[topic_key]

    def get_consumer_group(self, worker_name: str = "indexer") -> str:
        """Consumer group for a worker: explicit group_id, else the default group."""
        worker_config = self.get_worker_config(worker_name, "consumer")
        return worker_config.get("group_id") or DEFAULT_CONSUMER_GROUP

    def validate(self) -> None:
        """Validate configuration for correctness and constraints.

        Checks required fields, the explicit-commit invariant, Kafka timeout
        constraints and numeric ranges.
        """
        if not self.bootstrap_servers:
            raise ValueError("bootstrap_servers is required in kafka.connection section")

        if not self.topics.get("changes"):
            raise ValueError("kafka.topics.changes is required")

        if not self.feed.url:
            raise ValueError("feed.url is required")
        if not self.search.url:
            raise ValueError("search.url is required")
        if not self.search.index:
            raise ValueError("search.index is required")
        self._validate_min(
            {"timeout_seconds": self.search.timeout_seconds}, "timeout_seconds", 0, inclusive=False, context="search"
        )

        self._validate_enum(
            {"security_protocol": self.security_protocol},
            "security_protocol",
            ["PLAINTEXT", "SSL", "SASL_PLAINTEXT", "SASL_SSL"],
            "kafka.connection",
        )

        self._validate_consumer_settings(self.consumer_defaults, "consumer_defaults")
        self._validate_producer_settings(self.producer_defaults, "producer_defaults")

        for worker_name in WORKER_NAMES:
            worker_config = self._worker_section(worker_name)

            if "consumer" in worker_config:
                self._validate_consumer_settings(worker_config["consumer"], f"{worker_name}.consumer")

            if "producer" in worker_config:
                self._validate_producer_settings(worker_config["producer"], f"{worker_name}.producer")

            if "processing" in worker_config:
                self._validate_processing_settings(worker_config["processing"], f"{worker_name}.processing")

    @staticmethod
    def _validate_enum(
        settings: Dict[str, Any],
        key: str,
        valid_values: List[Any],
        context: str
    ) -> None:
        """Validate that a setting's value is in a list of valid values."""
        if key in settings and settings[key] not in valid_values:
            raise ValueError(
                f"{context}: {key} must be one of {valid_values}, "
                f"got '{settings[key]}'"
            )

    @staticmethod
    def _validate_min(
        settings: Dict[str, Any],
        key: str,
        min_value: float,
        inclusive: bool,
        context: str
    ) -> None:
        """Validate that a setting's value meets a minimum threshold."""
        if key in settings:
            value = settings[key]
            if inclusive and value < min_value:
                raise ValueError(
                    f"{context}: {key} must be >= {min_value}, got {value}"
                )
            elif not inclusive and value <= min_value:
                raise ValueError(
                    f"{context}: {key} must be > {min_value}, got {value}"
                )

    def _validate_consumer_settings(self, settings: Dict[str, Any], context: str) -> None:
        """Validate consumer settings against Kafka requirements and the commit invariant."""
        if _as_bool(settings.get("enable_auto_commit", False)):
            raise ValueError(
                f"{context}: enable_auto_commit must be false; offsets are committed "
                f"explicitly after indexing"
            )

        if "heartbeat_interval_ms" in settings and "session_timeout_ms" in settings:
            heartbeat = settings["heartbeat_interval_ms"]
            session_timeout = settings["session_timeout_ms"]
            if heartbeat >= session_timeout / 3:
                raise ValueError(
                    f"{context}: heartbeat_interval_ms ({heartbeat}) must be < "
                    f"session_timeout_ms/3 ({session_timeout/3:.0f})"
                )

        if "session_timeout_ms" in settings and "max_poll_interval_ms" in settings:
            session_timeout = settings["session_timeout_ms"]
            max_poll_interval = settings["max_poll_interval_ms"]
            if session_timeout >= max_poll_interval:
                raise ValueError(
                    f"{context}: session_timeout_ms ({session_timeout}) must be < "
                    f"max_poll_interval_ms ({max_poll_interval})"
                )

        self._validate_min(settings, "max_poll_records", 1, inclusive=True, context=context)
        self._validate_enum(settings, "auto_offset_reset", ["earliest", "latest"], context)

    def _validate_producer_settings(self, settings: Dict[str, Any], context: str) -> None:
        self._validate_enum(settings, "acks", ["0", "1", "all", 0, 1, -1], context)
        self._validate_enum(settings, "compression_type", [None, "none", "gzip", "snappy", "lz4", "zstd"], context)
        self._validate_min(settings, "batch_size", 0, inclusive=True, context=context)
        self._validate_min(settings, "linger_ms", 0, inclusive=True, context=context)

    def _validate_processing_settings(self, settings: Dict[str, Any], context: str) -> None:
        self._validate_min(settings, "batch_size", 1, inclusive=True, context=context)
        self._validate_min(settings, "poll_timeout_ms", 1, inclusive=True, context=context)
        self._validate_min(settings, "max_failed_cycles", 1, inclusive=True, context=context)
        self._validate_min(settings, "failure_backoff_seconds", 0, inclusive=True, context=context)
        self._validate_min(settings, "stats_interval_seconds", 0, inclusive=False, context=context)
        self._validate_enum(settings, "id_strategy", list(ID_STRATEGIES), context)


def load_config(
    config_path: Optional[Path] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> StreamConfig:
    """Load configuration from config.yaml file.

    The path is taken from the argument, then STREAMINDEX_CONFIG, then the
    packaged default. ``overrides`` is deep-merged over the whole document
    before it is parsed.
    """
    if config_path is None:
        env_path = os.getenv("STREAMINDEX_CONFIG")
        config_path = Path(env_path) if env_path else DEFAULT_CONFIG_FILE

    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path}\n" f"Expected file: config/config.yaml"
        )

    logger.info(f"Loading configuration from file: {config_path}")
    yaml_data = _expand_env_vars(load_yaml(config_path))

    if overrides:
        logger.debug(f"Applying overrides: {list(overrides.keys())}")
        yaml_data = _deep_merge(yaml_data, overrides)

    if "kafka" not in yaml_data:
        raise ValueError("Invalid config file: missing 'kafka:' section")

    kafka_config = yaml_data["kafka"]
    connection = kafka_config.get("connection", {})

    config = StreamConfig(
        bootstrap_servers=connection.get("bootstrap_servers", ""),
        security_protocol=connection.get("security_protocol", "PLAINTEXT"),
        sasl_mechanism=connection.get("sasl_mechanism", "PLAIN"),
        sasl_plain_username=connection.get("sasl_plain_username", ""),
        sasl_plain_password=connection.get("sasl_plain_password", ""),
        request_timeout_ms=int(connection.get("request_timeout_ms", 120000)),
        metadata_max_age_ms=int(connection.get("metadata_max_age_ms", 300000)),
        connections_max_idle_ms=int(connection.get("connections_max_idle_ms", 540000)),
        consumer_defaults=kafka_config.get("consumer_defaults", {}),
        producer_defaults=kafka_config.get("producer_defaults", {}),
        topics=kafka_config.get("topics") or {"changes": DEFAULT_TOPIC},
        relay=kafka_config.get("relay", {}),
        indexer=kafka_config.get("indexer", {}),
        feed=FeedConfig.from_dict(yaml_data.get("feed", {})),
        search=SearchConfig.from_dict(yaml_data.get("search", {})),
    )

    logger.debug("Configuration loaded successfully:")
    logger.debug(f"  - Bootstrap servers: {config.bootstrap_servers}")
    logger.debug(f"  - Topic: {config.topics.get('changes')}")
    logger.debug(f"  - Index: {config.search.index}")

    config.validate()
    logger.debug("Configuration validation passed")

    return config


_stream_config: Optional[StreamConfig] = None


def get_config() -> StreamConfig:
    """Get or load the singleton config instance."""
    global _stream_config
    if _stream_config is None:
        _stream_config = load_config()
    return _stream_config


def set_config(config: StreamConfig) -> None:
    """Set the singleton config instance (useful for testing)."""
    global _stream_config
    _stream_config = config


def reset_config() -> None:
    """Reset the singleton config instance (forces reload on next get_config() call)."""
    global _stream_config
    _stream_config = None


def _redacted(config: StreamConfig) -> Dict[str, Any]:
    data = asdict(config)
    if data.get("sasl_plain_password"):
        data["sasl_plain_password"] = "***"
    data["search"]["url"] = re.sub(r"(://)[^/@\s]+@", r"\1***@", data["search"]["url"])
    return data


def _cli_main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point for config validation and debugging."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Stream Index Configuration Tool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Validate configuration
  python -m config.config --validate

  # Show effective configuration
  python -m config.config --show-merged

  # JSON output for automation
  python -m config.config --validate --json --config /path/to/config.yaml
        """,
    )

    parser.add_argument(
        "--validate",
        action="store_true",
        help="Validate configuration structure and completeness",
    )
    parser.add_argument(
        "--show-merged",
        action="store_true",
        help="Display the effective configuration (secrets redacted)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Path to config.yaml file (default: src/config/config.yaml)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output in JSON format instead of human-readable",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    if not args.validate and not args.show_merged:
        parser.print_help()
        return 0

    try:
        config = load_config(config_path=args.config)
    except FileNotFoundError as e:
        if args.json:
            print(json.dumps({"error": str(e)}))
        else:
            print(f"Error: {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        if args.json:
            print(json.dumps({"validation": {"passed": False, "errors": [str(e)]}}))
        else:
            print(f"Validation error: {e}", file=sys.stderr)
        return 1

    output: Dict[str, Any] = {}
    if args.validate:
        # Validation runs inside load_config()
        if args.json:
            output["validation"] = {"passed": True, "errors": []}
        else:
            print("Configuration validation passed")
            print(f"  - Topic: {config.get_topic()}")
            print(f"  - Consumer group: {config.get_consumer_group()}")
            print(f"  - Index: {config.search.index}")

    if args.show_merged:
        if args.json:
            output["merged_config"] = _redacted(config)
        else:
            print(yaml.dump(_redacted(config), default_flow_style=False, sort_keys=False))

    if args.json:
        print(json.dumps(output, indent=2))

    return 0


if __name__ == "__main__":
    sys.exit(_cli_main())
