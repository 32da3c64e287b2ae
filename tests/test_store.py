"""Tests for the in-memory conversation store."""

from __future__ import annotations

import unittest

import httpx

from chatline.api import ConversationApi
from chatline.events import CONVERSATION_RENAMED, STORE_CHANGED, EventBus
from chatline.models import Conversation, DurableId, Message
from chatline.session import SessionPointer
from chatline.store import CONVERSATION_DELETED, ConversationStore
from fake_backend import FakeBackend


class StoreMutationTests(unittest.TestCase):
    """Synchronous mutations without any backend attached."""

    def setUp(self) -> None:
        self.bus = EventBus()
        self.changes: list[dict[str, object]] = []
        self.bus.subscribe(STORE_CHANGED, lambda event: self.changes.append(event.data))
        self.store = ConversationStore(bus=self.bus)

    def test_first_message_materializes_conversation_with_title(self) -> None:
        content = "Tell me everything about the migration patterns of arctic terns"
        conversation_id = self.store.add_message(
            None, Message(id="u1", role="user", content=content)
        )

        conversation = self.store.get(conversation_id)
        assert conversation is not None
        self.assertFalse(conversation.is_persisted)
        self.assertEqual(self.store.active_id, conversation_id)
        self.assertEqual(conversation.title, content[:50] + "...")
        self.assertEqual(conversation.message_count, 1)
        self.assertEqual(self.store.conversations[0], conversation)

    def test_update_message_merges_fields(self) -> None:
        conversation_id = self.store.add_message(
            None, Message(id="a1", role="assistant", is_streaming=True)
        )

        self.store.update_message(conversation_id, "a1", content="Hi", is_streaming=False)

        message = self.store.get_message(conversation_id, "a1")
        assert message is not None
        self.assertEqual(message.content, "Hi")
        self.assertFalse(message.is_streaming)
        self.assertEqual(self.changes[-1]["reason"], "message.updated")

    def test_update_message_ignores_missing_target(self) -> None:
        self.store.update_message("missing", "a1", content="x")
        self.assertEqual(self.changes, [])

    def test_update_message_rejects_unknown_fields(self) -> None:
        with self.assertRaises(TypeError):
            self.store.update_message(None, "a1", colour="red")

    def test_rename_moves_every_reference(self) -> None:
        renamed: list[dict[str, object]] = []
        self.bus.subscribe(CONVERSATION_RENAMED, lambda event: renamed.append(event.data))
        conversation = self.store.materialize_conversation()
        local_id = conversation.id
        self.store.persisting_ids.add(local_id)

        self.store.rename_conversation(local_id, "conv-42")

        self.assertTrue(conversation.is_persisted)
        self.assertEqual(self.store.active_id, "conv-42")
        self.assertEqual(self.store.session.get(), "conv-42")
        self.assertEqual(self.store.persisting_ids, {"conv-42"})
        self.assertIs(self.store.get(local_id), conversation)
        self.assertEqual(renamed, [{"local_id": local_id, "conversation_id": "conv-42"}])

    def test_active_pointer_only_tracks_durable_conversations(self) -> None:
        local = self.store.materialize_conversation()
        self.store.set_active_conversation(local.id)
        self.assertIsNone(self.store.session.get())

        self.store.conversations.append(
            Conversation(ref=DurableId("conv-1"), messages=[Message(id="m", role="user")])
        )
        self.store.set_active_conversation("conv-1")
        self.assertEqual(self.store.session.get(), "conv-1")

    def test_draft_resets_model_and_clears_active(self) -> None:
        self.store.materialize_conversation()
        self.store.set_draft_model("qwen/qwen3-32b")

        self.store.create_draft_conversation()

        self.assertIsNone(self.store.active_id)
        self.assertEqual(self.store.draft_model, self.store.default_model)
        self.assertIsNone(self.store.get_active_conversation())

    def test_model_and_reasoning_on_draft_update_draft_settings(self) -> None:
        self.store.set_conversation_model(None, "qwen/qwen3-32b")
        self.store.set_conversation_reasoning(None, effort="high", reasoning_format="raw")

        conversation = self.store.materialize_conversation()

        self.assertEqual(conversation.model, "qwen/qwen3-32b")
        self.assertEqual(conversation.reasoning_effort, "high")
        self.assertEqual(conversation.reasoning_format, "raw")

    def test_model_change_without_conversation_sets_draft_model(self) -> None:
        self.store.set_conversation_model(None, "qwen/qwen3-32b")

        self.assertEqual(self.store.draft_model, "qwen/qwen3-32b")
        self.assertEqual(self.changes[-1], {"conversation_id": None, "reason": "draft.model"})

    def test_title_of_missing_conversation_is_ignored(self) -> None:
        self.store.update_conversation_title("nope", "Renamed")
        self.assertEqual(self.changes, [])

    def test_clear_all_conversations(self) -> None:
        self.store.materialize_conversation()
        self.store.clear_all_conversations()
        self.assertEqual(self.store.conversations, [])
        self.assertIsNone(self.store.active_id)


class StoreBackendTests(unittest.IsolatedAsyncioTestCase):
    """Loading, restoring and deleting against the fake backend."""

    async def asyncSetUp(self) -> None:
        self.backend = FakeBackend()
        self.client = httpx.AsyncClient(
            base_url="http://backend.test", transport=self.backend.transport()
        )
        self.session = SessionPointer()
        self.store = ConversationStore(api=ConversationApi(self.client), session=self.session)

    async def asyncTearDown(self) -> None:
        await self.store.tasks.await_all()
        await self.client.aclose()

    async def test_load_restores_session_pointer_and_messages(self) -> None:
        self.backend.add_conversation("First")
        second = self.backend.add_conversation("Second", reasoningEffort="low")
        self.backend.add_message(second, "user", "Hi")
        self.backend.add_message(second, "assistant", "Hello!")
        self.session.set(second)

        await self.store.load_conversations()
        await self.store.tasks.await_all()

        self.assertTrue(self.store.is_loaded)
        self.assertEqual(self.store.active_id, second)
        active = self.store.get_active_conversation()
        assert active is not None
        self.assertEqual(active.reasoning_effort, "low")
        self.assertEqual([m.content for m in active.messages], ["Hi", "Hello!"])
        self.assertFalse(active.is_loading_messages)

    async def test_stale_session_pointer_is_ignored(self) -> None:
        self.backend.add_conversation("Only")
        self.session.set("conv-deleted")

        await self.store.load_conversations()

        self.assertIsNone(self.store.active_id)

    async def test_load_keeps_local_conversations_and_active_id(self) -> None:
        self.backend.add_conversation("Remote")
        local = self.store.materialize_conversation(
            Message(id="u1", role="user", content="draft")
        )

        await self.store.load_conversations()

        self.assertEqual([c.title for c in self.store.conversations], ["draft", "Remote"])
        self.assertEqual(self.store.active_id, local.id)

    async def test_unauthorized_list_marks_loaded(self) -> None:
        self.backend.list_status = 401

        await self.store.load_conversations()

        self.assertTrue(self.store.is_loaded)
        self.assertEqual(self.store.conversations, [])

    async def test_failed_list_marks_loaded(self) -> None:
        self.backend.list_status = 500

        with self.assertLogs("chatline.store", level="ERROR"):
            await self.store.load_conversations()

        self.assertTrue(self.store.is_loaded)

    async def test_delete_is_optimistic_and_retried_on_next_load(self) -> None:
        deleted: list[dict[str, object]] = []
        self.store.bus.subscribe(CONVERSATION_DELETED, lambda event: deleted.append(event.data))
        conversation_id = self.backend.add_conversation("Doomed")
        await self.store.load_conversations()
        self.store.set_active_conversation(conversation_id)
        self.backend.delete_status = 500

        await self.store.delete_conversation(conversation_id)

        self.assertEqual(self.store.conversations, [])
        self.assertIsNone(self.store.active_id)
        self.assertIsNone(self.session.get())
        self.assertEqual(deleted, [{"conversation_id": conversation_id}])
        self.assertEqual(self.store.pending_deletions, {conversation_id})

        await self.store.load_conversations()
        self.assertEqual(self.store.conversations, [])

        self.backend.delete_status = 200
        await self.store.load_conversations()
        self.assertEqual(self.store.pending_deletions, set())
        self.assertEqual(self.backend.conversations, [])

    async def test_delete_of_missing_remote_counts_as_deleted(self) -> None:
        conversation_id = self.backend.add_conversation("Gone")
        await self.store.load_conversations()
        self.backend.delete_status = 404

        await self.store.delete_conversation(conversation_id)

        self.assertEqual(self.store.pending_deletions, set())

    async def test_first_user_message_syncs_title_for_durable_conversation(self) -> None:
        conversation_id = self.backend.add_conversation("New Chat")
        await self.store.load_conversations()

        self.store.add_message(
            conversation_id, Message(id="u1", role="user", content="Plan a trip")
        )
        await self.store.tasks.await_all()

        patch = self.backend.calls("PATCH", f"/api/conversations/{conversation_id}")[0]
        self.assertEqual(self.backend.body(patch), {"title": "Plan a trip"})

    async def test_rename_syncs_title_for_durable_conversation(self) -> None:
        conversation_id = self.backend.add_conversation("Old title")
        await self.store.load_conversations()

        self.store.update_conversation_title(conversation_id, "Trip planning")
        await self.store.tasks.await_all()

        conversation = self.store.get(conversation_id)
        assert conversation is not None
        self.assertEqual(conversation.title, "Trip planning")
        patch = self.backend.calls("PATCH", f"/api/conversations/{conversation_id}")[0]
        self.assertEqual(self.backend.body(patch), {"title": "Trip planning"})

    async def test_rename_of_local_conversation_stays_local(self) -> None:
        local = self.store.materialize_conversation()

        self.store.update_conversation_title(local.id, "Scratch")
        await self.store.tasks.await_all()

        self.assertEqual(local.title, "Scratch")
        self.assertEqual(self.backend.requests, [])

    async def test_message_load_keeps_locally_appended_messages(self) -> None:
        conversation_id = self.backend.add_conversation("Chat")
        self.backend.add_message(conversation_id, "user", "stored")
        await self.store.load_conversations()
        self.store.add_message(
            conversation_id, Message(id="local", role="user", content="fresh")
        )

        await self.store.load_messages_for_conversation(conversation_id)

        conversation = self.store.get(conversation_id)
        assert conversation is not None
        self.assertEqual([m.content for m in conversation.messages], ["stored", "fresh"])
        self.assertEqual(conversation.message_count, 2)


if __name__ == "__main__":
    unittest.main()
