"""Durable key-value storage for engine records."""

from analysis_engine.storage.store import FileStore, KeyValueStore, MemoryStore, build_store

__all__ = ["KeyValueStore", "MemoryStore", "FileStore", "build_store"]
