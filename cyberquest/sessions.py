# -*- coding: utf-8 -*-
"""
Admin wizard state.

Lives inside the per-user container the bot already has (context.user_data),
so every conversation carries its own state and stale wizards expire.
"""
import time
from typing import Any, Dict, Optional

SESSION_KEY = "admin_edit"

EDIT_PASSWORD = "password"
EDIT_MISSION = "mission"
EDIT_HINT = "hint"

STEP_TEXT = "text"
STEP_ANSWER = "answer"
STEP_IMAGE = "image"


def now_ts() -> int:
    return int(time.time())


def begin(container: dict, kind: str, location: str, level: Optional[int] = None,
          now: Optional[int] = None) -> Dict[str, Any]:
    state = {
        "kind": kind,
        "location": location,
        "level": level,
        "step": STEP_TEXT if kind == EDIT_MISSION else None,
        "data": {},
        "started_ts": now if now is not None else now_ts(),
    }
    container[SESSION_KEY] = state
    return state


def current(container: dict, ttl: int, now: Optional[int] = None) -> Optional[Dict[str, Any]]:
    state = container.get(SESSION_KEY)
    if not state:
        return None
    now = now if now is not None else now_ts()
    if now - state.get("started_ts", 0) > ttl:
        container.pop(SESSION_KEY, None)
        return None
    return state


def advance(container: dict, step: str, now: Optional[int] = None, **data) -> Dict[str, Any]:
    state = container[SESSION_KEY]
    state["step"] = step
    state["data"].update(data)
    # each step gets a fresh ttl window
    state["started_ts"] = now if now is not None else now_ts()
    return state


def finish(container: dict) -> Optional[Dict[str, Any]]:
    return container.pop(SESSION_KEY, None)
