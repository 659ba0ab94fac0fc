from forkchat.errors import BadRequest, Forbidden, NotFound
from forkchat.models import ContentPart, UsageRecord
from tests.memory.base import MemoryStoreTestCase


class MessageTreeAppendTests(MemoryStoreTestCase):
    def test_append_first_message_sets_leaf(self) -> None:
        chat = self._tree.create_chat(self.user_id)
        node = self._tree.append(chat.id, None, "user", "hello", user_id=self.user_id)

        self.assertIsNone(node.parent_id)
        self.assertEqual(node.id, self.leaf_of(chat.id))
        self.assertEqual("hello", node.text)
        self.assertFalse(node.edited)

    def test_append_bumps_updated_at(self) -> None:
        chat = self._tree.create_chat(self.user_id)
        node = self._tree.append(chat.id, None, "user", "hello", user_id=self.user_id)
        row = self._store.execute("SELECT updated_at FROM chats WHERE id = ?", (chat.id,)).fetchone()
        self.assertEqual(node.created_at, row["updated_at"])

    def test_create_chat_with_system_prompt_roots_the_tree(self) -> None:
        chat = self._tree.create_chat(self.user_id, system_prompt="be brief")
        path = self._tree.active_path(chat.id, user_id=self.user_id)
        self.assertEqual(1, len(path))
        self.assertEqual("system", path[0].role)
        self.assertEqual("be brief", self._tree.get_system_prompt(chat.id, user_id=self.user_id))

    def test_append_without_parent_in_non_empty_chat_is_rejected(self) -> None:
        chat = self._tree.create_chat(self.user_id, system_prompt="sys")
        with self.assertRaises(BadRequest):
            self._tree.append(chat.id, None, "user", "orphan", user_id=self.user_id)

    def test_append_with_missing_parent_raises_not_found(self) -> None:
        chat = self._tree.create_chat(self.user_id)
        with self.assertRaises(NotFound):
            self._tree.append(chat.id, "missing", "user", "x", user_id=self.user_id)
        self.assertEqual(set(), self.message_ids(chat.id))

    def test_append_with_parent_from_other_chat_is_rejected(self) -> None:
        first = self._tree.create_chat(self.user_id, system_prompt="one")
        second = self._tree.create_chat(self.user_id, system_prompt="two")
        with self.assertRaises(BadRequest):
            self._tree.append(second.id, first.leaf_message_id, "user", "x", user_id=self.user_id)

    def test_append_unknown_role_is_rejected(self) -> None:
        chat = self._tree.create_chat(self.user_id)
        with self.assertRaises(BadRequest):
            self._tree.append(chat.id, None, "tool", "x", user_id=self.user_id)

    def test_append_to_missing_chat_raises_not_found(self) -> None:
        with self.assertRaises(NotFound):
            self._tree.append("nope", None, "user", "x", user_id=self.user_id)

    def test_other_user_is_forbidden(self) -> None:
        chat = self._tree.create_chat(self.user_id)
        with self.assertRaises(Forbidden):
            self._tree.append(chat.id, None, "user", "x", user_id="intruder")

    def test_usage_and_blob_content_round_trip(self) -> None:
        chat = self._tree.create_chat(self.user_id)
        usage = UsageRecord(input_tokens=12, output_tokens=3, finish_reason="success", created_at="t")
        node = self._tree.append(
            chat.id,
            None,
            "assistant",
            [ContentPart.of_text("see"), ContentPart.of_blob("file-9")],
            user_id=self.user_id,
            usage=usage,
        )
        loaded = self._tree.load(chat.id, user_id=self.user_id).get(node.id)
        self.assertEqual(usage, loaded.usage)
        self.assertEqual("file-9", loaded.content[1].blob_id)


class MessageTreeEditTests(MemoryStoreTestCase):
    def _conversation(self):
        chat = self._tree.create_chat(self.user_id, system_prompt="sys")
        user = self._tree.append(chat.id, chat.leaf_message_id, "user", "what is 2+2", user_id=self.user_id)
        usage = UsageRecord(input_tokens=20, output_tokens=7, first_response_duration_ms=30,
                            total_duration_ms=90, input_cost=0.1, output_cost=0.2, created_at="t0")
        reply = self._tree.append(chat.id, user.id, "assistant", "it is four", user_id=self.user_id, usage=usage)
        return chat, user, reply

    def test_edit_in_place_replaces_content_and_keeps_shape(self) -> None:
        chat, user, reply = self._conversation()
        updated = self._tree.edit_in_place(user.id, "what is 3+3", user_id=self.user_id)

        self.assertTrue(updated.edited)
        loaded = self._tree.load(chat.id, user_id=self.user_id)
        self.assertEqual("what is 3+3", loaded.get(user.id).text)
        self.assertEqual(user.parent_id, loaded.get(user.id).parent_id)
        self.assertEqual(reply.id, self.leaf_of(chat.id))

    def test_edit_in_place_is_idempotent(self) -> None:
        chat, user, _ = self._conversation()
        self._tree.edit_in_place(user.id, "same", user_id=self.user_id)
        self._tree.edit_in_place(user.id, "same", user_id=self.user_id)

        node = self._tree.load(chat.id, user_id=self.user_id).get(user.id)
        self.assertEqual(1, len(node.content))
        self.assertEqual("same", node.text)
        self.assertTrue(node.edited)

    def test_edit_in_place_is_full_replace(self) -> None:
        chat, user, _ = self._conversation()
        self._tree.edit_in_place(
            user.id, [ContentPart.of_text("a"), ContentPart.of_blob("b1")], user_id=self.user_id
        )
        self._tree.edit_in_place(user.id, "only text", user_id=self.user_id)
        node = self._tree.load(chat.id, user_id=self.user_id).get(user.id)
        self.assertEqual((ContentPart.of_text("only text"),), node.content)

    def test_edit_in_place_missing_and_forbidden(self) -> None:
        _, user, _ = self._conversation()
        with self.assertRaises(NotFound):
            self._tree.edit_in_place("missing", "x", user_id=self.user_id)
        with self.assertRaises(Forbidden):
            self._tree.edit_in_place(user.id, "x", user_id="intruder")

    def test_edit_and_fork_creates_sibling(self) -> None:
        chat, user, reply = self._conversation()
        fork = self._tree.edit_and_fork(reply.id, "it is 4, obviously", user_id=self.user_id)

        self.assertNotEqual(reply.id, fork.id)
        self.assertEqual(reply.parent_id, fork.parent_id)
        self.assertEqual("assistant", fork.role)
        self.assertTrue(fork.edited)

        loaded = self._tree.load(chat.id, user_id=self.user_id)
        original = loaded.get(reply.id)
        self.assertEqual("it is four", original.text)
        self.assertEqual(user.id, original.parent_id)
        self.assertFalse(original.edited)
        self.assertEqual([reply.id, fork.id], [n.id for n in loaded.children(user.id)])
        # The active leaf is the caller's decision.
        self.assertEqual(reply.id, self.leaf_of(chat.id))

    def test_edit_and_fork_derives_usage(self) -> None:
        chat, _, reply = self._conversation()
        fork = self._tree.edit_and_fork(reply.id, "one two three four five", user_id=self.user_id)

        self.assertIsNotNone(fork.usage)
        self.assertEqual(20, fork.usage.input_tokens)
        self.assertEqual(5, fork.usage.output_tokens)
        self.assertFalse(fork.usage.is_usage_reliable)
        self.assertEqual(0, fork.usage.total_duration_ms)
        self.assertEqual(0.0, fork.usage.output_cost)
        original = self._tree.load(chat.id, user_id=self.user_id).get(reply.id)
        self.assertEqual(7, original.usage.output_tokens)

    def test_edit_and_fork_without_usage_has_none(self) -> None:
        _, user, _ = self._conversation()
        fork = self._tree.edit_and_fork(user.id, "what is 5+5", user_id=self.user_id)
        self.assertIsNone(fork.usage)
        self.assertEqual(user.parent_id, fork.parent_id)

    def test_fork_then_select_leaf_switches_active_path(self) -> None:
        chat, user, _ = self._conversation()
        fork = self._tree.edit_and_fork(user.id, "what is 5+5", user_id=self.user_id)
        self._tree.set_leaf(chat.id, fork.id, user_id=self.user_id)

        path = self._tree.active_path(chat.id, user_id=self.user_id)
        self.assertEqual(["system", "user"], [n.role for n in path])
        self.assertEqual(fork.id, path[-1].id)

    def test_set_leaf_rejects_foreign_message(self) -> None:
        chat, _, _ = self._conversation()
        other = self._tree.create_chat(self.user_id, system_prompt="other")
        with self.assertRaises(BadRequest):
            self._tree.set_leaf(chat.id, other.leaf_message_id, user_id=self.user_id)

    def test_reactions(self) -> None:
        chat, _, reply = self._conversation()
        self._tree.set_reaction(reply.id, True, user_id=self.user_id)
        self.assertTrue(self._tree.load(chat.id, user_id=self.user_id).get(reply.id).reaction)
        self._tree.set_reaction(reply.id, False, user_id=self.user_id)
        self.assertFalse(self._tree.load(chat.id, user_id=self.user_id).get(reply.id).reaction)
        self._tree.set_reaction(reply.id, None, user_id=self.user_id)
        self.assertIsNone(self._tree.load(chat.id, user_id=self.user_id).get(reply.id).reaction)

    def test_list_messages_skips_system(self) -> None:
        chat, user, reply = self._conversation()
        listed = self._tree.list_messages(chat.id, user_id=self.user_id)
        self.assertEqual([user.id, reply.id], [n.id for n in listed])

    def test_mutations_are_recorded_as_events(self) -> None:
        _, user, _ = self._conversation()
        self._tree.edit_in_place(user.id, "x", user_id=self.user_id)
        rows = self._store.execute("SELECT type FROM events ORDER BY created_at").fetchall()
        types = [r["type"] for r in rows]
        self.assertIn("message.appended", types)
        self.assertIn("message.edited", types)
