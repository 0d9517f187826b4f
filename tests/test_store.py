"""Tests for inference_stack.data.store — ConfigStore."""

from __future__ import annotations

from inference_stack.data.store import VALID_KEYS, ConfigStore


class TestConfigStore:
    def test_default_timeout_seeded(self, temp_store):
        assert temp_store.get_config("planner_timeout") == "30"

    def test_missing_key(self, temp_store):
        assert temp_store.get_config("planner_model") is None

    def test_set_and_get(self, temp_store):
        temp_store.set_config("planner_model", "claude-x")
        assert temp_store.get_config("planner_model") == "claude-x"

    def test_overwrite(self, temp_store):
        temp_store.set_config("planner_timeout", "60")
        temp_store.set_config("planner_timeout", "90")
        assert temp_store.get_config("planner_timeout") == "90"

    def test_all_config(self, temp_store):
        temp_store.set_config("planner_model", "gpt-4o")
        assert temp_store.all_config() == {"planner_model": "gpt-4o", "planner_timeout": "30"}

    def test_persists_across_instances(self, tmp_path):
        db_path = str(tmp_path / "nested" / "data.db")
        store = ConfigStore(db_path=db_path)
        store.set_config("planner_model", "gemini-2.0-flash")
        store.close()

        reopened = ConfigStore(db_path=db_path)
        assert reopened.get_config("planner_model") == "gemini-2.0-flash"
        # Reopening must not reset values seeded by the schema.
        reopened.set_config("planner_timeout", "15")
        reopened.close()
        assert ConfigStore(db_path=db_path).get_config("planner_timeout") == "15"

    def test_valid_keys(self):
        assert VALID_KEYS == ("planner_model", "planner_timeout")
