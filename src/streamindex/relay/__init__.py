"""Ingestion relay: change feed to Kafka."""

from streamindex.relay.worker import ChangeFeedRelay, RelayEventHandler

__all__ = ["ChangeFeedRelay", "RelayEventHandler"]
