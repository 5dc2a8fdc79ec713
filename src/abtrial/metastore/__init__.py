# src/abtrial/metastore/__init__.py
from .helpers import ZkConnectionManager, create_zk_client, encode_segment, decode_segment
from .store import (
    Batch,
    Metastore,
    MetastoreConflictError,
    MetastoreError,
    MetastoreStoppedError,
    VersionToken,
)

__all__ = [
    "ZkConnectionManager",
    "create_zk_client",
    "encode_segment",
    "decode_segment",
    "Batch",
    "Metastore",
    "MetastoreConflictError",
    "MetastoreError",
    "MetastoreStoppedError",
    "VersionToken",
]
