from .base import BatchableAdapter, IdentityAdapter
from .memory import MemoryAdapter
from .metastore import MetastoreAdapter, purge_stale_visitors, USERS_ROOT

__all__ = [
    "IdentityAdapter",
    "BatchableAdapter",
    "MemoryAdapter",
    "MetastoreAdapter",
    "purge_stale_visitors",
    "USERS_ROOT",
]
