from forkchat.errors import BadRequest, Forbidden, NotFound
from forkchat.memory import MessageTree, SqliteChatRepository
from tests.memory.base import FakeTokenCounter, MemoryStoreTestCase


class _FailingRepository(SqliteChatRepository):
    def save_chat(self, chat) -> None:
        raise RuntimeError("disk full")


class DeleteSubtreeTests(MemoryStoreTestCase):
    def _abcd(self):
        """A -> B -> C and A -> D, with D as the active leaf."""
        chat = self._tree.create_chat(self.user_id)
        a = self._tree.append(chat.id, None, "user", "A", user_id=self.user_id)
        b = self._tree.append(chat.id, a.id, "assistant", "B", user_id=self.user_id)
        c = self._tree.append(chat.id, b.id, "user", "C", user_id=self.user_id)
        d = self._tree.append(chat.id, a.id, "assistant", "D", user_id=self.user_id)
        return chat, a, b, c, d

    def test_delete_root_removes_whole_closure(self) -> None:
        chat, a, b, c, d = self._abcd()
        deleted = self._tree.delete_subtree(a.id, user_id=self.user_id)

        self.assertEqual({a.id, b.id, c.id, d.id}, set(deleted))
        self.assertEqual(a.id, deleted[0])
        self.assertEqual(set(), self.message_ids(chat.id))
        self.assertIsNone(self.leaf_of(chat.id))

    def test_delete_branch_leaves_sibling_and_leaf(self) -> None:
        chat, a, b, c, d = self._abcd()
        self.assertEqual(d.id, self.leaf_of(chat.id))

        deleted = self._tree.delete_subtree(b.id, user_id=self.user_id)

        self.assertEqual([b.id, c.id], deleted)
        self.assertEqual({a.id, d.id}, self.message_ids(chat.id))
        self.assertEqual(d.id, self.leaf_of(chat.id))

    def test_delete_is_breadth_first(self) -> None:
        chat, a, b, c, d = self._abcd()
        deleted = self._tree.delete_subtree(a.id, user_id=self.user_id)
        self.assertEqual([a.id, b.id, d.id, c.id], deleted)

    def test_system_user_assistant_scenario(self) -> None:
        chat = self._tree.create_chat(self.user_id, system_prompt="sys")
        sys_id = chat.leaf_message_id
        user1 = self._tree.append(chat.id, sys_id, "user", "u1", user_id=self.user_id)
        asst1 = self._tree.append(chat.id, user1.id, "assistant", "a1", user_id=self.user_id)

        deleted = self._tree.delete_subtree(user1.id, None, user_id=self.user_id)

        self.assertEqual([user1.id, asst1.id], deleted)
        self.assertIsNone(self.leaf_of(chat.id))
        self.assertEqual({sys_id}, self.message_ids(chat.id))

    def test_explicit_new_leaf_is_applied(self) -> None:
        chat, a, b, c, d = self._abcd()
        self._tree.delete_subtree(d.id, c.id, user_id=self.user_id)
        self.assertEqual(c.id, self.leaf_of(chat.id))

    def test_new_leaf_inside_deleted_subtree_is_rejected(self) -> None:
        chat, a, b, c, d = self._abcd()
        with self.assertRaises(BadRequest):
            self._tree.delete_subtree(b.id, c.id, user_id=self.user_id)
        self.assertEqual({a.id, b.id, c.id, d.id}, self.message_ids(chat.id))

    def test_new_leaf_from_other_chat_is_rejected(self) -> None:
        chat, a, b, c, d = self._abcd()
        other = self._tree.create_chat(self.user_id, system_prompt="x")
        with self.assertRaises(BadRequest):
            self._tree.delete_subtree(b.id, other.leaf_message_id, user_id=self.user_id)
        self.assertEqual(d.id, self.leaf_of(chat.id))
        self.assertEqual(4, len(self.message_ids(chat.id)))

    def test_missing_and_forbidden(self) -> None:
        _, a, _, _, _ = self._abcd()
        with self.assertRaises(NotFound):
            self._tree.delete_subtree("missing", user_id=self.user_id)
        with self.assertRaises(Forbidden):
            self._tree.delete_subtree(a.id, user_id="intruder")

    def test_failed_delete_changes_nothing(self) -> None:
        chat, a, b, c, d = self._abcd()
        failing = MessageTree(_FailingRepository(self._store), FakeTokenCounter())
        with self.assertRaises(RuntimeError):
            failing.delete_subtree(b.id, user_id=self.user_id)

        self.assertEqual({a.id, b.id, c.id, d.id}, self.message_ids(chat.id))
        self.assertEqual(d.id, self.leaf_of(chat.id))

    def test_deleting_fork_keeps_original_branch(self) -> None:
        chat, a, b, c, d = self._abcd()
        fork = self._tree.edit_and_fork(b.id, "B2", user_id=self.user_id)
        deleted = self._tree.delete_subtree(fork.id, user_id=self.user_id)
        self.assertEqual([fork.id], deleted)
        self.assertEqual({a.id, b.id, c.id, d.id}, self.message_ids(chat.id))
