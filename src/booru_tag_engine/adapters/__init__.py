"""タグ編集エンジン用の永続化ストア群."""

from .base_store import BaseRecordStore, Pool, PostSet
from .sqlite_store import SqliteRecordStore

__all__ = [
    "BaseRecordStore",
    "SqliteRecordStore",
    "Pool",
    "PostSet",
]
