"""Factory for record store backends."""

from src.config.settings import get_settings
from src.store.store import JSONRecordStore, RecordStore

_store: RecordStore | None = None


def get_record_store() -> RecordStore:
    """Get the record store singleton for the configured backend."""
    global _store
    if _store is not None:
        return _store

    settings = get_settings()
    backend = settings.store_backend

    if backend == "json":
        # Missing file is fine: the store starts empty and creates it on first write
        _store = JSONRecordStore(settings.store_path)
        return _store

    if backend == "dynamodb":
        # Lazy import to avoid boto3 dependency when not needed
        from src.store.dynamodb_store import DynamoDBRecordStore
        _store = DynamoDBRecordStore(
            table_name=settings.dynamodb_table_name,
            region=settings.aws_region,
        )
        return _store

    raise ValueError(f"Unknown store backend: {backend}")
