from .kv_store import InMemoryKeyValueStore, KeyValueStore
from .sql_kv_store import SqlKeyValueStore

__all__ = ["KeyValueStore", "InMemoryKeyValueStore", "SqlKeyValueStore"]
