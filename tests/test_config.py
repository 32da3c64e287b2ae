"""Tests for configuration loading and validation."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
import unittest

from chatline.config import DEFAULT_CONFIG, load_config


class ConfigTests(unittest.TestCase):
    """Validate config merge and fallback behavior."""

    def _load(self, text: str | None) -> dict[str, dict[str, object]]:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.toml"
            if text is not None:
                config_path.write_text(text.strip(), encoding="utf-8")
            return load_config(config_path=config_path)

    def test_missing_config_uses_defaults(self) -> None:
        config = self._load(None)
        self.assertEqual(config, DEFAULT_CONFIG)
        self.assertEqual(config["backend"]["chat_path"], "/api/chat")
        self.assertEqual(config["models"]["max_history_messages"], 50)
        self.assertEqual(config["models"]["search_max_history_messages"], 10)
        self.assertEqual(config["rate_limit"]["requests"], 20)
        self.assertEqual(config["attachments"]["max_images"], 4)

    def test_partial_config_overrides_selected_values(self) -> None:
        config = self._load(
            """
[backend]
base_url = "https://chat.example.com/"
api_key = "  secret  "

[models]
default_model = "qwen/qwen3-32b"

[ui]
show_timestamps = false
            """
        )
        self.assertEqual(config["backend"]["base_url"], "https://chat.example.com")
        self.assertEqual(config["backend"]["api_key"], "secret")
        self.assertEqual(config["models"]["default_model"], "qwen/qwen3-32b")
        self.assertFalse(config["ui"]["show_timestamps"])
        self.assertEqual(config["app"]["title"], DEFAULT_CONFIG["app"]["title"])

    def test_search_ceiling_never_exceeds_history_window(self) -> None:
        config = self._load(
            """
[models]
max_history_messages = 6
search_max_history_messages = 10
            """
        )
        self.assertEqual(config["models"]["search_max_history_messages"], 6)

    def test_invalid_values_fallback_to_defaults(self) -> None:
        config = self._load(
            """
[backend]
timeout = -1

[models]
default_model = "not-a-model"
            """
        )
        self.assertEqual(config, DEFAULT_CONFIG)

    def test_invalid_toml_falls_back_to_defaults(self) -> None:
        config = self._load("[backend\nbase_url = ")
        self.assertEqual(config, DEFAULT_CONFIG)

    def test_non_http_scheme_is_rejected(self) -> None:
        config = self._load(
            """
[backend]
base_url = "ftp://chat.example.com"
            """
        )
        self.assertEqual(config["backend"]["base_url"], DEFAULT_CONFIG["backend"]["base_url"])

    def test_remote_host_blocked_when_not_allowed(self) -> None:
        config = self._load(
            """
[backend]
base_url = "https://chat.example.com"

[security]
allow_remote_hosts = false
            """
        )
        self.assertEqual(config["backend"]["base_url"], DEFAULT_CONFIG["backend"]["base_url"])

    def test_endpoint_paths_must_be_absolute(self) -> None:
        config = self._load(
            """
[backend]
chat_path = "api/chat"
            """
        )
        self.assertEqual(config["backend"]["chat_path"], "/api/chat")

    @unittest.skipUnless(os.name == "posix", "POSIX permissions only")
    def test_config_file_permissions_are_tightened(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.toml"
            config_path.write_text("[app]\ntitle = 'mine'\n", encoding="utf-8")
            config_path.chmod(0o644)

            config = load_config(config_path=config_path)

            self.assertEqual(config["app"]["title"], "mine")
            self.assertEqual(config_path.stat().st_mode & 0o777, 0o600)


if __name__ == "__main__":
    unittest.main()
