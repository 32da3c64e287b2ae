"""Tests for model selection and request history shaping."""

from __future__ import annotations

import unittest

from chatline.capabilities import (
    IMAGE_PLACEHOLDER_TEXT,
    MODEL_CHAT,
    MODEL_SEARCH,
    MODEL_VISION,
)
from chatline.exceptions import RequestValidationError
from chatline.models import ImageAttachment, Message
from chatline.policy import (
    CompletionRequest,
    ModelSelector,
    build_completion_request,
    build_history,
    enforce_model,
    filter_models,
)
from chatline.validators import validate_request


def _image(tag: str) -> ImageAttachment:
    return ImageAttachment(
        mime_type="image/png", file_name=f"{tag}.png", url=f"https://cdn/{tag}.png", key=tag
    )


def _conversation(count: int) -> list[Message]:
    return [
        Message(id=str(n), role="user" if n % 2 == 0 else "assistant", content=f"m{n}")
        for n in range(count)
    ]


class FilterModelsTests(unittest.TestCase):
    def test_plain_text_excludes_search_models(self) -> None:
        ids = [spec.id for spec in filter_models(False, False)]
        self.assertIn(MODEL_CHAT, ids)
        self.assertFalse(any(model.startswith("groq/compound") for model in ids))

    def test_web_search_keeps_catalog_order(self) -> None:
        ids = [spec.id for spec in filter_models(True, False)]
        self.assertEqual(ids, ["groq/compound", "groq/compound-mini"])

    def test_images_require_vision(self) -> None:
        self.assertEqual([spec.id for spec in filter_models(False, True)], [MODEL_VISION])

    def test_search_with_images_has_no_candidates(self) -> None:
        self.assertEqual(filter_models(True, True), [])


class ModelSelectorTests(unittest.TestCase):
    """Validate auto-substitution and restoration of the user's choice."""

    def test_images_substitute_then_restore(self) -> None:
        selector = ModelSelector()

        self.assertEqual(selector.reconcile(MODEL_CHAT, False, True), MODEL_VISION)
        self.assertEqual(selector.remembered, MODEL_CHAT)
        self.assertEqual(selector.reconcile(MODEL_VISION, False, False), MODEL_CHAT)
        self.assertIsNone(selector.remembered)

    def test_search_substitute_then_restore(self) -> None:
        selector = ModelSelector()

        self.assertEqual(selector.reconcile(MODEL_CHAT, True, False), "groq/compound")
        self.assertEqual(selector.reconcile("groq/compound", False, False), MODEL_CHAT)

    def test_compatible_model_is_kept(self) -> None:
        selector = ModelSelector()
        self.assertEqual(selector.reconcile(MODEL_VISION, False, True), MODEL_VISION)
        self.assertIsNone(selector.remembered)

    def test_explicit_choice_forgets_remembered_model(self) -> None:
        selector = ModelSelector()
        selector.reconcile(MODEL_CHAT, False, True)

        chosen = selector.choose("qwen/qwen3-32b")

        self.assertEqual(chosen, "qwen/qwen3-32b")
        self.assertIsNone(selector.remembered)

    def test_reset_keeps_next_conversation_model(self) -> None:
        selector = ModelSelector()
        selector.reconcile(MODEL_CHAT, True, False)

        selector.reset()

        self.assertIsNone(selector.remembered)
        self.assertEqual(
            selector.reconcile("qwen/qwen3-32b", False, False), "qwen/qwen3-32b"
        )

    def test_no_candidates_returns_none(self) -> None:
        self.assertIsNone(ModelSelector().reconcile(MODEL_CHAT, True, True))


class EnforceModelTests(unittest.TestCase):
    def test_rules(self) -> None:
        self.assertEqual(enforce_model(None, False, False), MODEL_CHAT)
        self.assertEqual(enforce_model(MODEL_CHAT, True, False), MODEL_SEARCH)
        self.assertEqual(enforce_model("groq/compound", True, False), "groq/compound")
        self.assertEqual(enforce_model(MODEL_CHAT, False, True), MODEL_VISION)
        self.assertEqual(enforce_model(MODEL_VISION, False, True), MODEL_VISION)


class BuildHistoryTests(unittest.TestCase):
    """Validate the outgoing message window."""

    def test_system_prompt_comes_first(self) -> None:
        history = build_history(_conversation(2), MODEL_CHAT, system_prompt="Be brief.")
        self.assertEqual(history[0], {"role": "system", "content": "Be brief."})
        self.assertEqual([m["content"] for m in history[1:]], ["m0", "m1"])

    def test_window_keeps_newest_messages(self) -> None:
        history = build_history(_conversation(60), MODEL_CHAT, max_history=50)
        self.assertEqual(len(history), 51)
        self.assertEqual(history[1]["content"], "m10")
        self.assertEqual(history[-1]["content"], "m59")

    def test_image_cap_prefers_newest_images(self) -> None:
        messages = [
            Message(id="a", role="user", content="old", images=[_image("a1"), _image("a2")]),
            Message(id="b", role="assistant", content="ok"),
            Message(id="c", role="user", content="mid", images=[_image("c1"), _image("c2")]),
            Message(id="d", role="assistant", content="ok"),
            Message(id="e", role="user", content="new", images=[_image("e1"), _image("e2")]),
        ]

        history = build_history(messages, MODEL_VISION, max_images=5)

        sent = [
            [part["url"] for part in entry.get("images", [])] for entry in history[1:]
        ]
        self.assertEqual(
            sent,
            [
                ["https://cdn/a2.png"],
                [],
                ["https://cdn/c1.png", "https://cdn/c2.png"],
                [],
                ["https://cdn/e1.png", "https://cdn/e2.png"],
            ],
        )

    def test_text_model_gets_placeholder_for_image_only_message(self) -> None:
        messages = [Message(id="a", role="user", content="", images=[_image("x")])]

        history = build_history(messages, MODEL_CHAT)

        self.assertEqual(history[-1], {"role": "user", "content": IMAGE_PLACEHOLDER_TEXT})


class BuildCompletionRequestTests(unittest.TestCase):
    def test_search_model_never_streams_and_uses_short_window(self) -> None:
        request = build_completion_request(
            _conversation(31), "groq/compound-mini", web_search=True
        )

        self.assertFalse(request.stream)
        self.assertEqual(request.model, "groq/compound-mini")
        self.assertEqual(len(request.messages), 11)
        self.assertEqual(request.messages[-1]["content"], "m30")

    def test_images_force_vision_model(self) -> None:
        messages = [Message(id="a", role="user", content="what", images=[_image("x")])]

        request = build_completion_request(messages, MODEL_CHAT)

        self.assertEqual(request.model, MODEL_VISION)
        self.assertTrue(request.stream)
        self.assertEqual(request.messages[-1]["images"], [
            {"url": "https://cdn/x.png", "mimeType": "image/png"}
        ])

    def test_payload_keys(self) -> None:
        request = CompletionRequest(
            model=MODEL_CHAT,
            messages=[{"role": "user", "content": "hi"}],
            reasoning_effort="high",
        )
        payload = request.to_payload()
        self.assertEqual(payload["webSearch"], False)
        self.assertEqual(payload["reasoning_effort"], "high")
        self.assertNotIn("reasoning_format", payload)


class ValidateRequestTests(unittest.TestCase):
    """Validate request checks that run before any network call."""

    def test_valid_request_passes(self) -> None:
        request = build_completion_request(_conversation(3), MODEL_CHAT)
        validated = validate_request(request)
        self.assertEqual(len(validated.messages), 3)

    def test_unknown_model_is_rejected(self) -> None:
        request = CompletionRequest(model="gpt-unknown", messages=[{"role": "user", "content": "hi"}])
        with self.assertRaises(RequestValidationError) as ctx:
            validate_request(request)
        self.assertIn("model", str(ctx.exception))

    def test_system_prompt_alone_is_rejected(self) -> None:
        request = CompletionRequest(
            model=MODEL_CHAT, messages=[{"role": "system", "content": "x"}]
        )
        with self.assertRaises(RequestValidationError):
            validate_request(request)

    def test_too_many_images_is_rejected(self) -> None:
        images = [{"url": f"https://cdn/{n}.png", "mimeType": "image/png"} for n in range(5)]
        request = CompletionRequest(
            model=MODEL_VISION,
            messages=[{"role": "user", "content": "look", "images": images}],
        )
        with self.assertRaises(RequestValidationError):
            validate_request(request)

    def test_oversized_content_is_rejected(self) -> None:
        request = CompletionRequest(
            model=MODEL_CHAT, messages=[{"role": "user", "content": "x" * 100_001}]
        )
        with self.assertRaises(RequestValidationError):
            validate_request(request)


if __name__ == "__main__":
    unittest.main()
