"""
Remote collector integration.

Local-first: messages are always committed to the local store before they
are published, and publishing failures never block ingest.

Enable it in ``~/.config/aiobscura/config.toml``:

    [collector]
    enabled = true
    server_url = "https://collector.example.com"
    collector_id = "your-collector-id"
    api_key = "cs_live_xxxxxxxxxxxx"
"""

from aiobscura.collector.client import CollectorClient, register_collector
from aiobscura.collector.credentials import CredentialStore, StoredCredential
from aiobscura.collector.events import CollectorEvent, compute_event_hash, session_start_event
from aiobscura.collector.publisher import PublishStats, StatefulSyncPublisher
from aiobscura.collector.retry import RetryConfig, calculate_delay

__all__ = [
    "CollectorClient",
    "CollectorEvent",
    "CredentialStore",
    "PublishStats",
    "RetryConfig",
    "StatefulSyncPublisher",
    "StoredCredential",
    "calculate_delay",
    "compute_event_hash",
    "register_collector",
    "session_start_event",
]
