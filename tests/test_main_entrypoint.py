"""Tests for CLI entrypoint wiring."""

from __future__ import annotations

import io
import unittest
from contextlib import redirect_stdout
from pathlib import Path
from unittest.mock import patch

from chatline.__main__ import main

try:
    import chatline.app  # noqa: F401
except ModuleNotFoundError:
    HAS_TEXTUAL = False
else:
    HAS_TEXTUAL = True


class MainEntrypointTests(unittest.TestCase):
    """Validate top-level main() behavior."""

    @unittest.skipUnless(HAS_TEXTUAL, "textual is not installed")
    def test_main_ensures_config_and_runs_app(self) -> None:
        with patch("chatline.__main__.ensure_config_dir") as ensure_mock, patch(
            "chatline.__main__.load_config", return_value={"loaded": True}
        ) as load_mock, patch("chatline.app.ChatlineApp") as app_cls_mock:
            app_instance = app_cls_mock.return_value
            main([])
            ensure_mock.assert_called_once()
            load_mock.assert_called_once_with(None)
            app_cls_mock.assert_called_once_with(config={"loaded": True})
            app_instance.run.assert_called_once()

    @unittest.skipUnless(HAS_TEXTUAL, "textual is not installed")
    def test_config_flag_is_forwarded(self) -> None:
        with patch("chatline.__main__.ensure_config_dir"), patch(
            "chatline.__main__.load_config", return_value={}
        ) as load_mock, patch("chatline.app.ChatlineApp"):
            main(["--config", "/tmp/alt.toml"])
        load_mock.assert_called_once_with(Path("/tmp/alt.toml"))

    def test_version_flag_prints_and_skips_app(self) -> None:
        buffer = io.StringIO()
        with patch("chatline.__main__.ensure_config_dir") as ensure_mock, redirect_stdout(buffer):
            main(["--version"])
        self.assertTrue(buffer.getvalue().startswith("chatline "))
        ensure_mock.assert_not_called()


if __name__ == "__main__":
    unittest.main()
