"""Worker ID generation using coolnames for memorable identifiers."""

from coolname import generate_slug


def generate_worker_id(prefix: str = "") -> str:
    """Return ``prefix-word1-word2-word3`` (or just the slug without a prefix).

    Examples:
        >>> generate_worker_id("indexer")
        'indexer-swift-blue-falcon'
    """
    slug = generate_slug(3)
    return f"{prefix}-{slug}" if prefix else slug
