# -*- coding: utf-8 -*-
"""
JSON API for the Telegram Mini App, plus the health endpoint.

A FastAPI app served by uvicorn in a background thread next to the bot.
Players are identified by the signed X-Telegram-Init-Data header.
"""
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl

import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from .progress import NotConfigured, NotUnlocked, QuestComplete, QuestEngine, QuestError
from .storage import StorageBusy

logger = logging.getLogger(__name__)

HEALTH_PATHS = ("/", "/health", "/healthz")
MAX_BODY_BYTES = 64 * 1024
INIT_DATA_HEADER = "X-Telegram-Init-Data"

STATUS_BY_ERROR = {
    "invalid_request": 400,
    "not_found": 404,
    "not_configured": 404,
    "team_not_found": 404,
    "not_unlocked": 403,
}


class ApiError(Exception):
    def __init__(self, status: int, error: str, message: str):
        super().__init__(message)
        self.status = status
        self.error = error
        self.message = message


# =========================
# INIT DATA
# =========================
def init_data_hash(pairs: Dict[str, str], bot_token: str) -> str:
    data_check_string = "\n".join(f"{k}={pairs[k]}" for k in sorted(pairs))
    secret_key = hmac.new(b"WebAppData", bot_token.encode("utf-8"), hashlib.sha256).digest()
    return hmac.new(secret_key, data_check_string.encode("utf-8"), hashlib.sha256).hexdigest()


def validate_init_data(init_data: str, bot_token: str, max_age: Optional[int] = None,
                       now: Optional[float] = None) -> Optional[Dict[str, str]]:
    """Check the Mini App signature, return the decoded fields or None."""
    if not init_data or not bot_token:
        return None
    try:
        pairs = dict(parse_qsl(init_data, strict_parsing=True))
    except ValueError:
        return None
    received_hash = pairs.pop("hash", "")
    if not received_hash:
        return None
    if not hmac.compare_digest(init_data_hash(pairs, bot_token), received_hash):
        return None
    if max_age:
        try:
            auth_date = int(pairs.get("auth_date", 0))
        except ValueError:
            return None
        now = now if now is not None else time.time()
        if now - auth_date > max_age:
            return None
    return pairs


def user_id_from_init_data(pairs: Dict[str, str]) -> Optional[int]:
    raw_user = pairs.get("user")
    if not raw_user:
        return None
    try:
        user = json.loads(raw_user)
        return int(user["id"])
    except (ValueError, KeyError, TypeError):
        return None


# =========================
# REQUESTS / RESPONSES
# =========================
class LocationRequest(BaseModel):
    location: Optional[str] = None


class PasswordRequest(LocationRequest):
    password: Optional[str] = None


class AnswerRequest(LocationRequest):
    answer: Optional[str] = None


class HintRequest(LocationRequest):
    hint_level: Optional[int] = Field(default=None, alias="hintLevel")
    level: Optional[int] = None


def content_length(raw: Optional[str]) -> Optional[int]:
    """Parse a Content-Length header; None when it is not a non-negative integer."""
    if raw is None:
        return 0
    raw = raw.strip()
    if not raw.isascii() or not raw.isdigit():
        return None
    return int(raw)


def json_response(status: int, body: Dict[str, Any]) -> JSONResponse:
    if "ok" in body:
        body["success"] = body["ok"]
    return JSONResponse(status_code=status, content=body)


def error_response(status: int, error: str, message: str) -> JSONResponse:
    return json_response(status, {"ok": False, "error": error, "message": message})


def _from_result(result: Dict[str, Any]) -> JSONResponse:
    body = dict(result)
    if body["ok"]:
        return json_response(200, body)
    return json_response(STATUS_BY_ERROR.get(body.get("error"), 200), body)


def _from_error(exc: QuestError) -> JSONResponse:
    body = {"ok": False, "error": exc.code, "message": exc.message}
    if exc.location:
        body["location"] = exc.location
    if isinstance(exc, QuestComplete):
        body["quest_complete"] = True
    return json_response(STATUS_BY_ERROR.get(exc.code, 200), body)


def _location(payload: Optional[LocationRequest]) -> Optional[str]:
    if payload is None or not payload.location:
        return None
    return payload.location


# =========================
# APP
# =========================
def create_api(engine: QuestEngine, bot_token: str, max_age: Optional[int] = None) -> FastAPI:
    app = FastAPI(title="CyberQuest Mini App API")

    @app.middleware("http")
    async def limit_body(request: Request, call_next):
        if request.method == "POST":
            length = content_length(request.headers.get("content-length"))
            if length is None:
                return error_response(400, "invalid_request", "Invalid Content-Length")
            if length > MAX_BODY_BYTES:
                return error_response(413, "invalid_request", "Body too large")
        return await call_next(request)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", INIT_DATA_HEADER],
        max_age=86400,
    )

    @app.exception_handler(ApiError)
    async def on_api_error(request: Request, exc: ApiError):
        return error_response(exc.status, exc.error, exc.message)

    @app.exception_handler(RequestValidationError)
    async def on_validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return error_response(400, "invalid_request", message)

    @app.exception_handler(StarletteHTTPException)
    async def on_http_error(request: Request, exc: StarletteHTTPException):
        error = "not_found" if exc.status_code == 404 else "http_error"
        return error_response(exc.status_code, error, str(exc.detail))

    @app.exception_handler(StorageBusy)
    async def on_storage_busy(request: Request, exc: StorageBusy):
        logger.warning(f"Storage busy on {request.url.path}: {exc}")
        return error_response(503, "busy", "Сервер занят, попробуйте ещё раз.")

    @app.exception_handler(Exception)
    async def on_unexpected(request: Request, exc: Exception):
        logger.exception(f"API error on {request.url.path}", exc_info=exc)
        return error_response(500, "internal", "Internal server error")

    def current_user_id(request: Request) -> int:
        pairs = validate_init_data(request.headers.get(INIT_DATA_HEADER, ""), bot_token, max_age)
        user_id = user_id_from_init_data(pairs) if pairs else None
        if user_id is None:
            raise ApiError(401, "unauthorized", "Не авторизован. Откройте приложение через кнопку в боте!")
        return user_id

    def current_team(user_id: int = Depends(current_user_id)) -> Dict[str, Any]:
        team = engine.team_for_user(user_id)
        if team is None:
            raise ApiError(403, "requires_registration", "Сначала зарегистрируйтесь в боте! Напишите /start.")
        return team

    def health() -> Dict[str, Any]:
        return {"status": "ok", "timestamp": int(time.time())}

    for path in HEALTH_PATHS:
        app.add_api_route(path, health, methods=["GET"])

    @app.post("/check-password")
    def check_password(payload: PasswordRequest, team: Dict[str, Any] = Depends(current_team),
                       user_id: int = Depends(current_user_id)):
        return _from_result(engine.check_password(team["id"], payload.password, _location(payload), user_id))

    @app.post("/get-mission")
    def get_mission(payload: Optional[LocationRequest] = None, team: Dict[str, Any] = Depends(current_team)):
        try:
            mission = engine.get_current_mission(team["id"], _location(payload))
        except (NotUnlocked, NotConfigured, QuestComplete) as e:
            return _from_error(e)
        return json_response(200, {"ok": True, **mission})

    @app.post("/check-answer")
    def check_answer(payload: AnswerRequest, team: Dict[str, Any] = Depends(current_team),
                     user_id: int = Depends(current_user_id)):
        return _from_result(engine.check_answer(team["id"], payload.answer, _location(payload), user_id))

    @app.post("/request-hint")
    def request_hint(payload: HintRequest, team: Dict[str, Any] = Depends(current_team),
                     user_id: int = Depends(current_user_id)):
        level = payload.hint_level if payload.hint_level is not None else payload.level
        if level is None:
            level = 1
        return _from_result(engine.request_hint(team["id"], level, _location(payload), user_id))

    return app


def start_api_server(engine: QuestEngine, bot_token: str, port: int, host: str = "0.0.0.0",
                     max_age: Optional[int] = None) -> None:
    logger.info(f"API server listening on port {port}")
    uvicorn.run(create_api(engine, bot_token, max_age), host=host, port=port, log_level="warning")
