"""querypipe: resilient GraphQL client request pipeline.

Classifies failures, retries with backoff, serializes token refresh,
deduplicates and batches requests, prunes outgoing queries and keeps a
normalized response cache.
"""

__version__ = "0.1.0"
