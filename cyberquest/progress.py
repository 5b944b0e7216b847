# -*- coding: utf-8 -*-
"""
Per-team progression: password -> mission -> answer, location by location.

The current location is always derived as route[len(completed)]; nothing
stores it. Player mistakes come back as soft results ({"ok": False, ...}),
only missing teams and the mission lookup raise.
"""
import logging
import random
import string
from typing import Any, Dict, Optional

from .locations import ALL_LOCATIONS, generate_route, is_location, location_name
from .normalize import normalize_answer, normalize_password
from .storage import MAX_HINT_LEVEL, MIN_HINT_LEVEL, QuestStore

logger = logging.getLogger(__name__)

TEAM_CODE_ALPHABET = string.ascii_uppercase + string.digits
TEAM_CODE_LENGTH = 6
TOTAL_LOCATIONS = len(ALL_LOCATIONS)


class QuestError(Exception):
    code = "quest_error"

    def __init__(self, message: str, location: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.location = location


class TeamNotFound(QuestError):
    code = "team_not_found"


class NotUnlocked(QuestError):
    code = "not_unlocked"


class NotConfigured(QuestError):
    code = "not_configured"


class QuestComplete(QuestError):
    code = "quest_complete"


# =========================
# HELPERS
# =========================
def expected_location(team: Dict[str, Any]) -> Optional[str]:
    completed = team.get("completed", [])
    route = team.get("route", [])
    if len(completed) >= len(route):
        return None
    return route[len(completed)]


def team_progress(team: Dict[str, Any], max_hints: int = 3) -> Dict[str, Any]:
    hints_used = team.get("hints_used", 0)
    return {
        "completed": len(team.get("completed", [])),
        "total": len(team.get("route", [])) or TOTAL_LOCATIONS,
        "completed_locations": list(team.get("completed", [])),
        "unlocked": list(team.get("unlocked", [])),
        "route": list(team.get("route", [])),
        "expected_location": expected_location(team),
        "hints_used": hints_used,
        "hints_left": max(0, max_hints - hints_used),
        "quest_complete": expected_location(team) is None,
    }


def soft_failure(error: str, message: str, **extra) -> Dict[str, Any]:
    result = {"ok": False, "error": error, "message": message}
    result.update(extra)
    return result


def _is_blank(value) -> bool:
    return not isinstance(value, str) or not value.strip()


class QuestEngine:
    def __init__(self, store: QuestStore, max_hints: int = 3, max_team_size: int = 3,
                 rng: Optional[random.Random] = None):
        self.store = store
        self.max_hints = max_hints
        self.max_team_size = max_team_size
        self.rng = rng or random.Random()

    # =========================
    # TEAMS
    # =========================
    def get_team(self, team_id: str) -> Dict[str, Any]:
        team = self.store.get_team(team_id)
        if team is None:
            raise TeamNotFound(f"Команда {team_id} не найдена")
        return team

    def team_for_user(self, user_id: int) -> Optional[Dict[str, Any]]:
        player = self.store.get_player(user_id)
        if not player or not player.get("team_id"):
            return None
        return self.store.get_team(player["team_id"])

    def progress(self, team: Dict[str, Any]) -> Dict[str, Any]:
        return team_progress(team, self.max_hints)

    def _new_team_code(self) -> str:
        while True:
            code = "".join(self.rng.choice(TEAM_CODE_ALPHABET) for _ in range(TEAM_CODE_LENGTH))
            if self.store.get_team(code) is None:
                return code

    def _create_team_for(self, user_id: int, name: Optional[str] = None) -> Dict[str, Any]:
        code = self._new_team_code()
        team = self.store.create_team(code, name or f"Команда {code}", generate_route(self.rng))
        self.store.set_player_team(user_id, code)
        self.store.log_event("team_created", code, user_id, data={"route": team["route"]})
        return team

    def register_player(self, user_id: int, username: Optional[str] = None,
                        first_name: Optional[str] = None, last_name: Optional[str] = None) -> Dict[str, Any]:
        """First contact creates a solo team; later calls only refresh the profile."""
        self.store.upsert_player(user_id, username, first_name, last_name)
        team = self.team_for_user(user_id)
        if team is not None:
            return team
        team = self._create_team_for(user_id)
        self.store.log_event("player_registered", team["id"], user_id)
        return team

    def create_team(self, user_id: int, username: Optional[str] = None,
                    first_name: Optional[str] = None, last_name: Optional[str] = None,
                    name: Optional[str] = None) -> Dict[str, Any]:
        self.store.upsert_player(user_id, username, first_name, last_name)
        return self._create_team_for(user_id, name)

    def join_team(self, user_id: int, code: str, username: Optional[str] = None,
                  first_name: Optional[str] = None, last_name: Optional[str] = None) -> Dict[str, Any]:
        if _is_blank(code):
            return soft_failure("invalid_request", "Укажите код команды, например: /join ABC123")
        code = code.strip().upper()
        team = self.store.get_team(code)
        if team is None:
            return soft_failure("team_not_found", f"Команда с кодом {code} не найдена.")

        members = self.store.team_members(code)
        if any(m["id"] == user_id for m in members):
            return {"ok": True, "message": "Вы уже в этой команде.", "team": team}
        if len(members) >= self.max_team_size:
            return soft_failure("team_full", f"В команде уже {len(members)} игрока, мест нет.")

        self.store.upsert_player(user_id, username, first_name, last_name)
        self.store.set_player_team(user_id, code)
        self.store.log_event("team_joined", code, user_id)
        logger.info(f"Player {user_id} joined team {code}")
        return {"ok": True, "message": f"Вы присоединились к команде {team['name']}.", "team": team}

    # =========================
    # GATE: PASSWORD
    # =========================
    def check_password(self, team_id: str, password: str, location: Optional[str] = None,
                       user_id: Optional[int] = None) -> Dict[str, Any]:
        if _is_blank(password):
            return soft_failure("invalid_request", "Не указан пароль.")
        if location is not None and not is_location(location):
            return soft_failure("invalid_request", f"Неизвестная локация: {location}")

        team = self.get_team(team_id)
        expected = expected_location(team)
        if expected is None:
            return soft_failure("quest_complete", "Квест уже пройден!")
        location = location or expected
        if location != expected:
            return soft_failure(
                "wrong_location",
                f"Эта локация ещё недоступна! Сначала завершите: {location_name(expected)}",
                location=location,
                expected_location=expected,
            )

        stored = self.store.get_password(location)
        if not stored or not stored.get("normalized"):
            logger.warning(f"Password for {location} is not configured")
            return soft_failure(
                "not_configured",
                "Пароль для этой локации ещё не настроен администратором.",
                location=location,
            )

        submitted = normalize_password(password)
        if submitted != stored["normalized"]:
            self.store.log_event("wrong_password", team_id, user_id, location, {
                "input": password.strip()[:20],
                "normalized": submitted,
            })
            return soft_failure(
                "wrong_password",
                "Неверный пароль! Проверьте написание и попробуйте снова.",
                location=location,
            )

        team, changed = self.store.unlock_location(team_id, location)
        self.store.log_event("location_unlocked", team_id, user_id, location, {"already_unlocked": not changed})
        return {
            "ok": True,
            "message": "Пароль верный! Задание открыто.",
            "location": location,
            "location_name": location_name(location),
            "team_progress": self.progress(team),
        }

    # =========================
    # GATE: MISSION
    # =========================
    def get_current_mission(self, team_id: str, location: Optional[str] = None) -> Dict[str, Any]:
        team = self.get_team(team_id)
        expected = expected_location(team)
        if location is None:
            if expected is None:
                raise QuestComplete("Квест уже пройден!")
            location = expected
        if location not in team["unlocked"]:
            raise NotUnlocked("Сначала введите пароль доступа к локации", location)

        mission = self.store.get_mission(location)
        if mission is None:
            raise NotConfigured("Задание ещё не настроено администратором", location)

        return {
            "location_id": location,
            "location_name": location_name(location),
            "mission_text": mission["text"],
            "image_url": mission.get("image_url"),
            "team_progress": self.progress(team),
        }

    # =========================
    # GATE: ANSWER
    # =========================
    def check_answer(self, team_id: str, answer: str, location: Optional[str] = None,
                     user_id: Optional[int] = None) -> Dict[str, Any]:
        if _is_blank(answer):
            return soft_failure("invalid_request", "Не указан ответ.")
        if location is not None and not is_location(location):
            return soft_failure("invalid_request", f"Неизвестная локация: {location}")

        team = self.get_team(team_id)
        expected = expected_location(team)
        if expected is None:
            return soft_failure("quest_complete", "Квест уже пройден!", quest_complete=True)
        location = location or expected
        if location != expected:
            return soft_failure(
                "wrong_location",
                f"Сейчас ваша цель: {location_name(expected)}",
                location=location,
                expected_location=expected,
            )
        if location not in team["unlocked"]:
            return soft_failure("not_unlocked", "Сначала введите пароль доступа к локации.", location=location)

        mission = self.store.get_mission(location)
        if not mission or not mission.get("answer_normalized"):
            logger.warning(f"Mission for {location} is not configured")
            return soft_failure("not_configured", "Задание ещё не настроено администратором.", location=location)

        if normalize_answer(answer) != mission["answer_normalized"]:
            self.store.log_event("wrong_answer", team_id, user_id, location, {"input": answer.strip()[:20]})
            return soft_failure(
                "wrong_answer",
                "Неверный ответ! Обсудите с командой или запросите подсказку.",
                location=location,
                quest_complete=False,
            )

        team, changed = self.store.complete_location(team_id, location)
        if changed:
            self.store.log_event("location_completed", team_id, user_id, location)

        next_location = expected_location(team)
        quest_complete = next_location is None
        if changed and quest_complete:
            self.store.log_event("quest_completed", team_id, user_id, data={"hints_used": team["hints_used"]})
            logger.info(f"Team {team_id} completed the quest")

        return {
            "ok": True,
            "message": "Квест пройден! 🎉" if quest_complete else "Верно! Локация пройдена.",
            "location": location,
            "next_location_id": next_location,
            "next_location_name": location_name(next_location) if next_location else None,
            "quest_complete": quest_complete,
            "team_progress": self.progress(team),
        }

    # =========================
    # HINTS
    # =========================
    def request_hint(self, team_id: str, level: int = 1, location: Optional[str] = None,
                     user_id: Optional[int] = None) -> Dict[str, Any]:
        if isinstance(level, bool) or not isinstance(level, int) or not MIN_HINT_LEVEL <= level <= MAX_HINT_LEVEL:
            return soft_failure("invalid_request", "Уровень подсказки должен быть от 1 до 3.")
        if location is not None and not is_location(location):
            return soft_failure("invalid_request", f"Неизвестная локация: {location}")

        team = self.get_team(team_id)
        if team["hints_used"] >= self.max_hints:
            return soft_failure("no_hints_left", "У вашей команды закончились подсказки!", hints_left=0)

        expected = expected_location(team)
        if expected is None:
            return soft_failure("quest_complete", "Квест уже пройден!", hints_left=self.max_hints - team["hints_used"])
        location = location or expected
        if location != expected:
            return soft_failure(
                "wrong_location",
                f"Подсказки доступны только для текущей локации: {location_name(expected)}",
                hints_left=self.max_hints - team["hints_used"],
            )

        hint = self.store.get_hint(location, level)
        if hint is None:
            return soft_failure(
                "not_found",
                "Подсказка не настроена. Обратитесь к организаторам.",
                hints_left=self.max_hints - team["hints_used"],
            )

        hints_used = self.store.use_hint(team_id, self.max_hints)
        if hints_used is None:
            return soft_failure("no_hints_left", "У вашей команды закончились подсказки!", hints_left=0)

        self.store.log_event("hint_used", team_id, user_id, location, {"level": level, "served": hint["hint_level"]})
        return {
            "ok": True,
            "text": hint["text"],
            "level": hint["hint_level"],
            "location": location,
            "hints_used": hints_used,
            "hints_left": max(0, self.max_hints - hints_used),
        }
