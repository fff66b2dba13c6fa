"""Tests for src/store/factory.py — get_record_store factory."""

import pytest

import src.store.factory as factory_mod
from src.store.dynamodb_store import DynamoDBRecordStore
from src.store.store import JSONRecordStore


@pytest.fixture(autouse=True)
def reset_store_singleton(monkeypatch):
    """Reset the factory singleton between tests."""
    monkeypatch.setattr(factory_mod, "_store", None)
    yield
    monkeypatch.setattr(factory_mod, "_store", None)


class TestGetRecordStore:

    def test_json_backend(self, override_settings, tmp_path):
        override_settings(STORE_BACKEND="json", STORE_PATH=str(tmp_path / "data.json"))
        assert isinstance(factory_mod.get_record_store(), JSONRecordStore)

    def test_dynamodb_backend(self, override_settings):
        override_settings(STORE_BACKEND="dynamodb", DYNAMODB_TABLE_NAME="t", AWS_REGION="eu-west-1")
        store = factory_mod.get_record_store()
        assert isinstance(store, DynamoDBRecordStore)
        assert store._region == "eu-west-1"

    def test_singleton_returns_same_instance(self, override_settings, tmp_path):
        override_settings(STORE_BACKEND="json", STORE_PATH=str(tmp_path / "data.json"))
        assert factory_mod.get_record_store() is factory_mod.get_record_store()

    def test_unknown_backend(self, override_settings):
        override_settings(STORE_BACKEND="redis")
        with pytest.raises(ValueError, match="redis"):
            factory_mod.get_record_store()
