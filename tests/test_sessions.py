from __future__ import annotations

import sys
import unittest
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from cyberquest import sessions  # noqa: E402


class AdminSessionTests(unittest.TestCase):
    def test_begin_mission_starts_at_text_step(self):
        user_data = {}
        state = sessions.begin(user_data, sessions.EDIT_MISSION, "dome", now=100)
        self.assertEqual(state["step"], sessions.STEP_TEXT)
        self.assertIs(user_data[sessions.SESSION_KEY], state)

    def test_begin_hint_keeps_level(self):
        user_data = {}
        state = sessions.begin(user_data, sessions.EDIT_HINT, "hut", level=2, now=100)
        self.assertEqual(state["level"], 2)
        self.assertIsNone(state["step"])

    def test_current_within_ttl(self):
        user_data = {}
        sessions.begin(user_data, sessions.EDIT_PASSWORD, "gates", now=100)
        self.assertIsNotNone(sessions.current(user_data, ttl=60, now=160))

    def test_expired_session_is_dropped(self):
        user_data = {}
        sessions.begin(user_data, sessions.EDIT_PASSWORD, "gates", now=100)
        self.assertIsNone(sessions.current(user_data, ttl=60, now=161))
        self.assertNotIn(sessions.SESSION_KEY, user_data)

    def test_no_session(self):
        self.assertIsNone(sessions.current({}, ttl=60))

    def test_advance_collects_data_and_refreshes_ttl(self):
        user_data = {}
        sessions.begin(user_data, sessions.EDIT_MISSION, "stone", now=100)
        sessions.advance(user_data, sessions.STEP_ANSWER, now=150, text="Найди камень")
        state = sessions.advance(user_data, sessions.STEP_IMAGE, now=200, answer="камень")
        self.assertEqual(state["data"], {"text": "Найди камень", "answer": "камень"})
        self.assertEqual(state["step"], sessions.STEP_IMAGE)
        self.assertIsNotNone(sessions.current(user_data, ttl=60, now=250))

    def test_sessions_are_per_container(self):
        first, second = {}, {}
        sessions.begin(first, sessions.EDIT_PASSWORD, "gates", now=100)
        sessions.begin(second, sessions.EDIT_MISSION, "lair", now=100)
        self.assertEqual(sessions.current(first, 60, now=100)["kind"], sessions.EDIT_PASSWORD)
        self.assertEqual(sessions.current(second, 60, now=100)["location"], "lair")

    def test_finish(self):
        user_data = {}
        sessions.begin(user_data, sessions.EDIT_PASSWORD, "gates", now=100)
        self.assertEqual(sessions.finish(user_data)["location"], "gates")
        self.assertIsNone(sessions.finish(user_data))


if __name__ == "__main__":
    unittest.main()
