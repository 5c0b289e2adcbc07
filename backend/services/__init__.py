"""
Services module for provider access and job persistence
"""

from .provider_gateway import ProviderGateway, ReplicateGateway, get_provider_gateway
from .job_store import JobStore, FileDurableStore, InMemoryDurableStore

__all__ = [
    "ProviderGateway",
    "ReplicateGateway",
    "get_provider_gateway",
    "JobStore",
    "FileDurableStore",
    "InMemoryDurableStore",
]
