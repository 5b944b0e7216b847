# -*- coding: utf-8 -*-
import re

_PASSWORD_STRIP = re.compile(r"[^a-z0-9_]")
_ANSWER_STRIP = re.compile(r"[^a-z0-9а-я]")

PLACEHOLDER_ANSWERS = {"", "-"}


def normalize_password(text: str) -> str:
    text = (text or "").strip().lower()
    return _PASSWORD_STRIP.sub("", text)


def normalize_answer(text: str) -> str:
    text = (text or "").strip().lower().replace("ё", "е")
    return _ANSWER_STRIP.sub("", text)


def is_placeholder_answer(text: str) -> bool:
    """True for answers that would match any input once normalized."""
    if (text or "").strip() in PLACEHOLDER_ANSWERS:
        return True
    return normalize_answer(text) == ""
