import unittest

from chatrelay.errors import NotFoundError, ValidationError
from chatrelay.sessions import SessionStore
from chatrelay.store import InMemoryConversationStore
from chatrelay.users import UserDirectory

from tests.util import FakeClock


class UserDirectoryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.users = UserDirectory(InMemoryConversationStore())

    def test_register_validates_profile(self):
        with self.assertRaises(ValidationError):
            self.users.register("ab", "ab@example.com")
        with self.assertRaises(ValidationError):
            self.users.register("abc", "not-an-email")
        with self.assertRaises(ValidationError):
            self.users.register("abc", "abc@example.com", bio="x" * 151)

        user = self.users.register("abc", "abc@example.com", bio="hello")
        self.assertTrue(user.id.startswith("usr_"))
        self.assertEqual(self.users.get(user.id).bio, "hello")

    def test_register_rejects_taken_username(self):
        self.users.register("abc", "abc@example.com")
        with self.assertRaises(ValidationError):
            self.users.register("abc", "other@example.com")

    def test_update_profile_keeps_unset_fields(self):
        user = self.users.register("abc", "abc@example.com", bio="old")

        updated = self.users.update_profile(user.id, profile_picture="img://me")

        self.assertEqual((updated.bio, updated.profile_picture), ("old", "img://me"))
        with self.assertRaises(ValidationError):
            self.users.update_profile(user.id, username="no")

    def test_delete_unknown_user(self):
        with self.assertRaises(NotFoundError):
            self.users.delete("usr_missing")
        with self.assertRaises(NotFoundError):
            self.users.get("usr_missing")


class SessionStoreTests(unittest.TestCase):
    def test_sessions_expire(self):
        clock = FakeClock(start_ms=0)
        sessions = SessionStore(ttl_ms=100, now_func=clock.now)

        session = sessions.create("alice")
        self.assertIs(sessions.get(session.session_token), session)

        clock.advance(200)
        self.assertIsNone(sessions.get(session.session_token))

    def test_invalidate_user_drops_all_tokens(self):
        sessions = SessionStore()
        first = sessions.create("alice")
        second = sessions.create("alice")
        other = sessions.create("bob")

        self.assertEqual(sessions.invalidate_user("alice"), 2)
        self.assertIsNone(sessions.get(first.session_token))
        self.assertIsNone(sessions.get(second.session_token))
        self.assertIsNotNone(sessions.get(other.session_token))


if __name__ == "__main__":
    unittest.main()
