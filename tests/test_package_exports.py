"""Tests for top-level package lazy exports."""

from __future__ import annotations

import unittest

import chatline


class PackageExportTests(unittest.TestCase):
    """Ensure __getattr__ and exported symbols behave as expected."""

    def test_lazy_exports_resolve_known_symbols(self) -> None:
        self.assertTrue(callable(chatline.load_config))
        self.assertTrue(callable(chatline.ensure_config_dir))
        self.assertTrue(callable(chatline.build_runtime))
        self.assertIsNotNone(chatline.SendOrchestrator)
        self.assertIsNotNone(chatline.SendOptions)
        self.assertIsNotNone(chatline.ConversationStore)
        self.assertIsNotNone(chatline.PersistenceGateway)
        self.assertIsNotNone(chatline.TurnPhase)
        self.assertIsNotNone(chatline.TurnOutcome)
        self.assertTrue(issubclass(chatline.RateLimitedError, chatline.ChatlineError))
        self.assertTrue(issubclass(chatline.SafetyRejectedError, chatline.ChatlineError))
        self.assertTrue(issubclass(chatline.UploadFailedError, chatline.ChatlineError))
        self.assertTrue(issubclass(chatline.ChatConnectionError, chatline.ChatlineError))
        self.assertTrue(issubclass(chatline.ConfigValidationError, chatline.ChatlineError))

    def test_every_public_name_is_exported(self) -> None:
        for name in chatline.__all__:
            if name == "ChatlineApp":
                continue
            self.assertIsNotNone(getattr(chatline, name), name)

    def test_unknown_symbol_raises_attribute_error(self) -> None:
        with self.assertRaises(AttributeError):
            getattr(chatline, "THIS_DOES_NOT_EXIST")


if __name__ == "__main__":
    unittest.main()
