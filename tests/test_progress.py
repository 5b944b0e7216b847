from __future__ import annotations

import random
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from cyberquest.locations import ALL_LOCATIONS, is_valid_route  # noqa: E402
from cyberquest.progress import (  # noqa: E402
    NotConfigured,
    NotUnlocked,
    QuestComplete,
    QuestEngine,
    TeamNotFound,
    expected_location,
)
from cyberquest.storage import QuestStore  # noqa: E402

ROUTE = ["gates", "dome", "mirror", "stone", "hut", "lair"]
PASSWORDS = {loc: f"{loc.capitalize()} 2024" for loc in ROUTE}
ANSWERS = {loc: f"Ответ-{i}" for i, loc in enumerate(ROUTE, start=1)}


class EngineTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory(prefix="quest_engine_test_")
        self.addCleanup(self.tmpdir.cleanup)
        self.store = QuestStore(str(Path(self.tmpdir.name) / "quest.sqlite"), busy_timeout=1.0)
        self.store.init_db()
        self.engine = QuestEngine(self.store, max_hints=3, max_team_size=3, rng=random.Random(1))

    def make_team(self, team_id: str = "TEAM01", user_id: int = 100) -> str:
        self.store.create_team(team_id, f"Команда {team_id}", ROUTE)
        self.store.upsert_player(user_id, None, "Игрок", None)
        self.store.set_player_team(user_id, team_id)
        return team_id

    def configure(self, with_hints: bool = True) -> None:
        for loc in ROUTE:
            self.store.set_password(loc, PASSWORDS[loc])
            self.store.set_mission(loc, f"Загадка {loc}", ANSWERS[loc])
            if with_hints:
                self.store.set_hint(loc, 1, f"{loc} hint 1")
                self.store.set_hint(loc, 2, f"{loc} hint 2")


class RegistrationTests(EngineTestCase):
    def test_first_contact_creates_solo_team_with_route(self):
        team = self.engine.register_player(1, "alice", "Alice", None)
        self.assertTrue(is_valid_route(team["route"]))
        self.assertEqual(self.store.get_player(1)["team_id"], team["id"])
        self.assertEqual(len(team["id"]), 6)

    def test_route_is_not_regenerated(self):
        first = self.engine.register_player(1, "alice", "Alice", None)
        second = self.engine.register_player(1, "alice_new", "Alice", None)
        self.assertEqual(first["id"], second["id"])
        self.assertEqual(first["route"], second["route"])
        self.assertEqual(self.store.get_player(1)["username"], "alice_new")

    def test_each_player_gets_own_team(self):
        a = self.engine.register_player(1)
        b = self.engine.register_player(2)
        self.assertNotEqual(a["id"], b["id"])

    def test_join_team_by_code(self):
        team = self.engine.create_team(1, first_name="Captain")
        result = self.engine.join_team(2, team["id"].lower(), first_name="Mate")
        self.assertTrue(result["ok"])
        self.assertEqual(self.engine.team_for_user(2)["id"], team["id"])

    def test_join_is_limited_to_team_size(self):
        team = self.engine.create_team(1)
        self.assertTrue(self.engine.join_team(2, team["id"])["ok"])
        self.assertTrue(self.engine.join_team(3, team["id"])["ok"])
        result = self.engine.join_team(4, team["id"])
        self.assertFalse(result["ok"])
        self.assertEqual(result["error"], "team_full")
        self.assertIsNone(self.engine.team_for_user(4))

    def test_join_unknown_code(self):
        result = self.engine.join_team(2, "ZZZZZZ")
        self.assertEqual(result["error"], "team_not_found")
        self.assertEqual(self.engine.join_team(2, "  ")["error"], "invalid_request")

    def test_rejoining_own_team_is_ok(self):
        team = self.engine.create_team(1)
        self.assertTrue(self.engine.join_team(1, team["id"])["ok"])


class PasswordGateTests(EngineTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.team_id = self.make_team()
        self.configure()

    def test_correct_password_unlocks_current_location(self):
        result = self.engine.check_password(self.team_id, "gates2024", user_id=100)
        self.assertTrue(result["ok"])
        self.assertEqual(result["location"], "gates")
        self.assertEqual(self.store.get_team(self.team_id)["unlocked"], ["gates"])

    def test_password_comparison_is_normalized(self):
        self.assertTrue(self.engine.check_password(self.team_id, "  GATES 2024!  ", "gates")["ok"])

    def test_wrong_password_is_soft_and_logged(self):
        result = self.engine.check_password(self.team_id, "nope", "gates", user_id=100)
        self.assertFalse(result["ok"])
        self.assertEqual(result["error"], "wrong_password")
        self.assertEqual(self.store.get_team(self.team_id)["unlocked"], [])
        self.assertEqual(self.store.recent_events(1)[0]["type"], "wrong_password")

    def test_wrong_location_is_rejected(self):
        result = self.engine.check_password(self.team_id, PASSWORDS["dome"], "dome")
        self.assertFalse(result["ok"])
        self.assertEqual(result["error"], "wrong_location")
        self.assertEqual(result["expected_location"], "gates")

    def test_unconfigured_password_is_distinct(self):
        self.store.delete_password("gates")
        result = self.engine.check_password(self.team_id, "anything", "gates")
        self.assertEqual(result["error"], "not_configured")

    def test_invalid_input(self):
        self.assertEqual(self.engine.check_password(self.team_id, "   ")["error"], "invalid_request")
        self.assertEqual(self.engine.check_password(self.team_id, None)["error"], "invalid_request")
        self.assertEqual(self.engine.check_password(self.team_id, "x", "moon")["error"], "invalid_request")

    def test_repeat_unlock_is_noop(self):
        self.engine.check_password(self.team_id, PASSWORDS["gates"])
        result = self.engine.check_password(self.team_id, PASSWORDS["gates"])
        self.assertTrue(result["ok"])
        self.assertEqual(self.store.get_team(self.team_id)["unlocked"], ["gates"])

    def test_unknown_team_raises(self):
        with self.assertRaises(TeamNotFound):
            self.engine.check_password("NOPE", "gates2024")


class MissionTests(EngineTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.team_id = self.make_team()

    def test_mission_hidden_until_unlocked(self):
        self.configure()
        with self.assertRaises(NotUnlocked) as ctx:
            self.engine.get_current_mission(self.team_id)
        self.assertEqual(ctx.exception.location, "gates")

    def test_missing_mission_is_not_configured(self):
        self.store.set_password("gates", "gate2024")
        self.engine.check_password(self.team_id, "gate2024")
        with self.assertRaises(NotConfigured):
            self.engine.get_current_mission(self.team_id)

    def test_mission_payload(self):
        self.configure()
        self.store.set_mission("gates", "Найди дуб", "Дуб", "https://img/1.png")
        self.engine.check_password(self.team_id, PASSWORDS["gates"])
        mission = self.engine.get_current_mission(self.team_id)
        self.assertEqual(mission["location_id"], "gates")
        self.assertEqual(mission["mission_text"], "Найди дуб")
        self.assertEqual(mission["image_url"], "https://img/1.png")
        self.assertEqual(mission["team_progress"]["completed"], 0)
        self.assertNotIn("answer", mission)

    def test_finished_team_has_no_current_mission(self):
        self.configure()
        for loc in ROUTE:
            self.engine.check_password(self.team_id, PASSWORDS[loc])
            self.engine.check_answer(self.team_id, ANSWERS[loc])
        with self.assertRaises(QuestComplete):
            self.engine.get_current_mission(self.team_id)


class AnswerGateTests(EngineTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.team_id = self.make_team()
        self.configure()

    def test_scenario_first_location(self):
        self.assertTrue(self.engine.check_password(self.team_id, PASSWORDS["gates"], "gates")["ok"])
        self.assertEqual(self.engine.get_current_mission(self.team_id)["location_id"], "gates")

        wrong = self.engine.check_answer(self.team_id, "не то", "gates")
        self.assertFalse(wrong["ok"])
        self.assertEqual(wrong["error"], "wrong_answer")
        self.assertEqual(self.store.get_team(self.team_id)["completed"], [])
        self.assertEqual(self.engine.get_current_mission(self.team_id)["location_id"], "gates")

        right = self.engine.check_answer(self.team_id, ANSWERS["gates"], "gates")
        self.assertTrue(right["ok"])
        self.assertFalse(right["quest_complete"])
        self.assertEqual(right["next_location_id"], "dome")
        team = self.store.get_team(self.team_id)
        self.assertEqual(team["completed"], ["gates"])
        self.assertEqual(team["unlocked"], ["gates", "dome"])
        self.assertEqual(expected_location(team), "dome")

    def test_answer_requires_unlock(self):
        result = self.engine.check_answer(self.team_id, ANSWERS["gates"])
        self.assertEqual(result["error"], "not_unlocked")

    def test_answer_is_case_space_and_punctuation_insensitive(self):
        self.store.set_mission("gates", "Загадка", "Дуб-2024")
        self.engine.check_password(self.team_id, PASSWORDS["gates"])
        self.assertTrue(self.engine.check_answer(self.team_id, " дуб2024 ")["ok"])

    def test_answer_for_other_location_rejected(self):
        self.engine.check_password(self.team_id, PASSWORDS["gates"])
        result = self.engine.check_answer(self.team_id, ANSWERS["dome"], "dome")
        self.assertEqual(result["error"], "wrong_location")

    def test_missing_mission_reported_as_configuration(self):
        self.engine.check_password(self.team_id, PASSWORDS["gates"])
        self.store.delete_mission("gates")
        self.assertEqual(self.engine.check_answer(self.team_id, "x")["error"], "not_configured")

    def test_full_route_completes_quest(self):
        for i, loc in enumerate(ROUTE):
            self.assertTrue(self.engine.check_password(self.team_id, PASSWORDS[loc])["ok"])
            result = self.engine.check_answer(self.team_id, ANSWERS[loc])
            self.assertTrue(result["ok"])
            self.assertEqual(result["team_progress"]["completed"], i + 1)
        self.assertTrue(result["quest_complete"])
        self.assertIsNone(result["next_location_id"])
        self.assertEqual(self.store.recent_events(1)[0]["type"], "quest_completed")

        after = self.engine.check_answer(self.team_id, ANSWERS["lair"])
        self.assertEqual(after["error"], "quest_complete")
        self.assertEqual(self.engine.check_password(self.team_id, "x")["error"], "quest_complete")

    def test_progression_invariants_hold_under_random_operations(self):
        rng = random.Random(2024)
        inputs = list(PASSWORDS.values()) + list(ANSWERS.values()) + ["junk", "  ", "-"]
        previous_completed = 0
        for _ in range(300):
            op = rng.choice(["password", "answer", "hint"])
            loc = rng.choice(ALL_LOCATIONS + [None])
            if op == "password":
                self.engine.check_password(self.team_id, rng.choice(inputs), loc)
            elif op == "answer":
                self.engine.check_answer(self.team_id, rng.choice(inputs), loc)
            else:
                self.engine.request_hint(self.team_id, rng.randint(1, 3), loc)

            team = self.store.get_team(self.team_id)
            completed, unlocked, route = team["completed"], team["unlocked"], team["route"]
            self.assertGreaterEqual(len(completed), previous_completed)
            self.assertEqual(completed, route[:len(completed)])
            self.assertIn(len(unlocked), (len(completed), len(completed) + 1))
            self.assertEqual(unlocked, route[:len(unlocked)])
            self.assertLessEqual(team["hints_used"], 3)
            previous_completed = len(completed)


class HintTests(EngineTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.team_id = self.make_team()
        self.configure()

    def test_hint_returns_current_location_text(self):
        result = self.engine.request_hint(self.team_id, 1)
        self.assertTrue(result["ok"])
        self.assertEqual(result["text"], "gates hint 1")
        self.assertEqual(result["hints_used"], 1)
        self.assertEqual(result["hints_left"], 2)

    def test_counter_reflects_concurrent_spend(self):
        real_get_hint = self.store.get_hint

        def get_hint_while_teammate_spends(location, level):
            self.store.use_hint(self.team_id, 3)
            return real_get_hint(location, level)

        with mock.patch.object(self.store, "get_hint", side_effect=get_hint_while_teammate_spends):
            result = self.engine.request_hint(self.team_id, 1)
        self.assertTrue(result["ok"])
        self.assertEqual(result["hints_used"], 2)
        self.assertEqual(result["hints_left"], 1)
        self.assertEqual(self.store.get_team(self.team_id)["hints_used"], 2)

    def test_highest_available_level_is_served(self):
        result = self.engine.request_hint(self.team_id, 3)
        self.assertEqual(result["level"], 2)
        self.assertEqual(result["text"], "gates hint 2")

    def test_cap_is_shared_across_locations(self):
        self.assertTrue(self.engine.request_hint(self.team_id, 1)["ok"])
        self.engine.check_password(self.team_id, PASSWORDS["gates"])
        self.engine.check_answer(self.team_id, ANSWERS["gates"])
        self.assertTrue(self.engine.request_hint(self.team_id, 1)["ok"])
        self.assertTrue(self.engine.request_hint(self.team_id, 2)["ok"])

        fourth = self.engine.request_hint(self.team_id, 1, "dome")
        self.assertFalse(fourth["ok"])
        self.assertEqual(fourth["error"], "no_hints_left")
        self.assertEqual(fourth["hints_left"], 0)
        self.assertEqual(self.store.get_team(self.team_id)["hints_used"], 3)

    def test_fourth_request_fails_for_any_location_or_level(self):
        for _ in range(3):
            self.assertTrue(self.engine.request_hint(self.team_id, 1)["ok"])
        for loc in ALL_LOCATIONS:
            for level in (1, 2, 3):
                self.assertEqual(self.engine.request_hint(self.team_id, level, loc)["error"], "no_hints_left")
        self.assertEqual(self.store.get_team(self.team_id)["hints_used"], 3)

    def test_missing_hint_is_not_found_and_not_counted(self):
        for level in (1, 2):
            self.store.delete_hint("gates", level)
        result = self.engine.request_hint(self.team_id, 3)
        self.assertEqual(result["error"], "not_found")
        self.assertEqual(self.store.get_team(self.team_id)["hints_used"], 0)

    def test_hint_for_other_location_rejected(self):
        result = self.engine.request_hint(self.team_id, 1, "dome")
        self.assertEqual(result["error"], "wrong_location")
        self.assertEqual(self.store.get_team(self.team_id)["hints_used"], 0)

    def test_invalid_level(self):
        for level in (0, 4, "2", True, None):
            self.assertEqual(self.engine.request_hint(self.team_id, level)["error"], "invalid_request")


if __name__ == "__main__":
    unittest.main()
