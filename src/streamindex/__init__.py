"""Change feed relay and batch indexer.

Workers:
    relay    - forwards Server-Sent Events from the change feed onto a Kafka topic
    indexer  - consumes that topic and upserts each event into the search index,
               committing offsets only after the batch is indexed
"""

__version__ = "0.1.0"
