"""Feed hub ingestion."""

from livefusion.feeds.hub import FeedHub
from livefusion.feeds.ingest import FeedIngestor

__all__ = [
    "FeedHub",
    "FeedIngestor",
]
