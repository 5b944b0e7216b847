# -*- coding: utf-8 -*-

import asyncio
import logging
import os
import threading
from typing import Any, Dict, List, Optional

from telegram import Update, InlineKeyboardButton, InlineKeyboardMarkup, WebAppInfo
from telegram.ext import (
    Application,
    CommandHandler,
    CallbackQueryHandler,
    MessageHandler,
    PicklePersistence,
    PersistenceInput,
    ContextTypes,
    filters,
)

from . import config, sessions
from .locations import ALL_LOCATIONS, is_location, location_label
from .normalize import is_placeholder_answer
from .progress import (
    NotConfigured,
    NotUnlocked,
    QuestComplete,
    QuestEngine,
    expected_location,
)
from .storage import MAX_HINT_LEVEL, MIN_HINT_LEVEL, ContentIntegrityError, QuestStore, StorageBusy
from .webapp import start_api_server

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 4


# =========================
# HELPERS
# =========================
def lines(*parts: str) -> str:
    return "\n".join(parts)


def get_engine(context: ContextTypes.DEFAULT_TYPE) -> QuestEngine:
    return context.bot_data["engine"]


def is_admin(update: Update) -> bool:
    user = update.effective_user
    return user is not None and user.id in config.ADMIN_USER_IDS


def user_profile(update: Update) -> Dict[str, Any]:
    user = update.effective_user
    return {
        "username": user.username,
        "first_name": user.first_name,
        "last_name": user.last_name,
    }


def format_progress(engine: QuestEngine, team: Dict[str, Any]) -> str:
    progress = engine.progress(team)
    current = progress["expected_location"]
    target = location_label(current) if current else "квест пройден 🎉"
    return lines(
        f"🛡️ Команда: {team['name']} ({team['id']})",
        f"✅ Пройдено локаций: {progress['completed']}/{progress['total']}",
        f"💡 Осталось подсказок: {progress['hints_left']}/{engine.max_hints}",
        f"📍 Текущая цель: {target}",
    )


def webapp_keyboard(team: Dict[str, Any], admin: bool = False) -> Optional[InlineKeyboardMarkup]:
    rows: List[List[InlineKeyboardButton]] = []
    if config.FRONTEND_URL:
        url = f"{config.FRONTEND_URL}?team={team['id']}"
        rows.append([InlineKeyboardButton("🚀 Начать квест", web_app=WebAppInfo(url=url))])
    if admin:
        rows.append([InlineKeyboardButton("🔧 Админ-панель", callback_data="admin_dashboard")])
    return InlineKeyboardMarkup(rows) if rows else None


# =========================
# TEXTS
# =========================
INTRO = lines(
    "👾 Вирус «Тень Сети» атакует Кибердеревню!",
    "🛡️ Ваша миссия — пройти 6 локаций и собрать все амулеты защиты.",
    "",
    "На каждой локации найдите пароль, откройте задание и решите загадку.",
)

HELP = lines(
    "Команды:",
    "• /password <пароль> — открыть текущую локацию",
    "• /mission — показать задание",
    "• /answer <ответ> — ответить на загадку",
    "• /hint [уровень] — подсказка (3 на весь квест)",
    "• /stats — прогресс команды",
    "• /newteam — создать новую команду",
    "• /join <код> — вступить в команду",
    "",
    "Можно просто писать пароль или ответ сообщением.",
)

NOT_REGISTERED = "Сначала начните игру командой /start"


# =========================
# SENDERS
# =========================
async def send_mission(update: Update, context: ContextTypes.DEFAULT_TYPE, team: Dict[str, Any]) -> None:
    engine = get_engine(context)
    try:
        mission = await asyncio.to_thread(engine.get_current_mission, team["id"])
    except QuestComplete:
        await update.effective_chat.send_message("🎉 Квест пройден! Кибердеревня спасена.")
        return
    except NotUnlocked as e:
        await update.effective_chat.send_message(
            f"🔒 {location_label(e.location)}: {e.message}.\nОтправьте пароль сообщением или /password <пароль>."
        )
        return
    except NotConfigured as e:
        await update.effective_chat.send_message(f"🤔 {location_label(e.location)}: {e.message}.")
        return

    text = lines(
        f"{location_label(mission['location_id'])}",
        "",
        mission["mission_text"],
        "",
        "Отправьте ответ сообщением или /answer <ответ>.",
    )
    if mission.get("image_url"):
        await update.effective_chat.send_photo(photo=mission["image_url"], caption=text)
        return
    await update.effective_chat.send_message(text)


async def require_team(update: Update, context: ContextTypes.DEFAULT_TYPE) -> Optional[Dict[str, Any]]:
    team = await asyncio.to_thread(get_engine(context).team_for_user, update.effective_user.id)
    if team is None:
        await update.effective_chat.send_message(NOT_REGISTERED)
    return team


# =========================
# PLAYER COMMANDS
# =========================
async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    engine = get_engine(context)
    user = update.effective_user
    team = await asyncio.to_thread(engine.register_player, user.id, **user_profile(update))
    members = await asyncio.to_thread(engine.store.team_members, team["id"])

    msg = lines(
        f"👋 Добро пожаловать в «Защиту Кибердеревни», {user.first_name or 'игрок'}!",
        "",
        INTRO,
        "",
        format_progress(engine, team),
        f"👥 Игроков в команде: {len(members)}/{engine.max_team_size}",
        "",
        HELP,
    )
    await update.message.reply_text(msg, reply_markup=webapp_keyboard(team, is_admin(update)))


async def cmd_help(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await update.message.reply_text(HELP)


async def cmd_newteam(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    engine = get_engine(context)
    team = await asyncio.to_thread(engine.create_team, update.effective_user.id, **user_profile(update))
    await update.message.reply_text(
        lines(
            "✅ Команда создана!",
            "",
            f"🔑 Код команды: {team['id']}",
            "👉 Отправьте код товарищам: /join " + team["id"],
            f"Максимум {engine.max_team_size} игрока в команде.",
        ),
        reply_markup=webapp_keyboard(team),
    )


async def cmd_join(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    engine = get_engine(context)
    code = context.args[0] if context.args else ""
    result = await asyncio.to_thread(engine.join_team, update.effective_user.id, code, **user_profile(update))
    if not result["ok"]:
        await update.message.reply_text(result["message"])
        return
    await update.message.reply_text(lines(result["message"], "", format_progress(engine, result["team"])))


async def cmd_stats(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    team = await require_team(update, context)
    if team is None:
        return
    engine = get_engine(context)
    members = await asyncio.to_thread(engine.store.team_members, team["id"])
    names = ", ".join(m["first_name"] or str(m["id"]) for m in members)
    await update.message.reply_text(lines("📊 Статистика", "", format_progress(engine, team), f"👥 Состав: {names}"))


async def cmd_password(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    team = await require_team(update, context)
    if team is None:
        return
    await try_password(update, context, team, " ".join(context.args or []))


async def cmd_mission(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    team = await require_team(update, context)
    if team is None:
        return
    await send_mission(update, context, team)


async def cmd_answer(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    team = await require_team(update, context)
    if team is None:
        return
    await try_answer(update, context, team, " ".join(context.args or []))


async def cmd_hint(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    team = await require_team(update, context)
    if team is None:
        return
    engine = get_engine(context)

    if context.args:
        level = config.safe_int(context.args[0], 0)
    else:
        level = min(team["hints_used"] + 1, MAX_HINT_LEVEL)

    result = await asyncio.to_thread(engine.request_hint, team["id"], level, user_id=update.effective_user.id)
    if not result["ok"]:
        await update.message.reply_text(f"🚫 {result['message']}")
        return
    await update.message.reply_text(lines(
        f"💡 Подсказка для «{location_label(result['location'])}»",
        "",
        result["text"],
        "",
        f"Осталось подсказок: {result['hints_left']}/{engine.max_hints}",
    ))


# =========================
# GATE
# =========================
async def try_password(update: Update, context: ContextTypes.DEFAULT_TYPE, team: Dict[str, Any], raw: str) -> None:
    result = await asyncio.to_thread(
        get_engine(context).check_password, team["id"], raw, user_id=update.effective_user.id
    )
    if not result["ok"]:
        await update.effective_chat.send_message(f"❌ {result['message']}")
        return
    await update.effective_chat.send_message(f"✅ {result['message']}")
    await send_mission(update, context, await asyncio.to_thread(get_engine(context).get_team, team["id"]))


async def try_answer(update: Update, context: ContextTypes.DEFAULT_TYPE, team: Dict[str, Any], raw: str) -> None:
    result = await asyncio.to_thread(
        get_engine(context).check_answer, team["id"], raw, user_id=update.effective_user.id
    )
    if not result["ok"]:
        await update.effective_chat.send_message(f"❌ {result['message']}")
        return

    if result["quest_complete"]:
        await update.effective_chat.send_message(lines(
            "🎉 Верно! Это была последняя локация.",
            "Вирус «Тень Сети» побеждён, Кибердеревня спасена!",
        ))
        return

    await update.effective_chat.send_message(lines(
        f"✅ {result['message']}",
        "",
        f"📍 Следующая локация: {location_label(result['next_location_id'])}",
        f"Прогресс: {result['team_progress']['completed']}/{result['team_progress']['total']}",
    ))


# =========================
# ADMIN
# =========================
def admin_dashboard_markup() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([
        [InlineKeyboardButton("🔑 Пароли локаций", callback_data="admin_passwords")],
        [InlineKeyboardButton("📝 Задания", callback_data="admin_missions")],
        [InlineKeyboardButton("💡 Подсказки", callback_data="admin_hints")],
        [InlineKeyboardButton("📊 Статистика", callback_data="admin_stats")],
    ])


def locations_markup(prefix: str) -> InlineKeyboardMarkup:
    buttons = [InlineKeyboardButton(location_label(loc), callback_data=f"{prefix}{loc}") for loc in ALL_LOCATIONS]
    rows = [buttons[i:i + 2] for i in range(0, len(buttons), 2)]
    rows.append([InlineKeyboardButton("🔙 Назад", callback_data="admin_dashboard")])
    return InlineKeyboardMarkup(rows)


def admin_dashboard_text(store: QuestStore) -> str:
    return lines(
        "🔧 Админ-панель квеста",
        "",
        f"✅ Заданий: {len(store.all_missions())}/{len(ALL_LOCATIONS)}",
        f"🔑 Паролей: {len(store.all_passwords())}/{len(ALL_LOCATIONS)}",
        f"💡 Подсказок: {store.count_hints()}",
        "",
        "Выберите раздел:",
    )


def admin_stats_text(store: QuestStore) -> str:
    stats = store.admin_stats(len(ALL_LOCATIONS))
    msg = lines(
        "📊 Статистика квеста",
        "",
        f"👥 Игроков: {stats['total_players']}",
        f"🛡️ Команд: {stats['total_teams']}",
        f"🏁 Прошли квест: {stats['completed_teams']}",
        "",
        "Последние события:",
    )
    events = stats["recent_events"]
    if not events:
        return msg + "\n(нет)"
    return msg + "\n" + "\n".join(
        f"• {ev['created_at']} {ev['type']} {ev['team_id'] or ''} {ev['location'] or ''}".rstrip()
        for ev in events
    )


async def cmd_admin(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not is_admin(update):
        await update.message.reply_text(f"🚫 Доступ запрещён\n\nВаш ID: {update.effective_user.id}")
        return
    store = get_engine(context).store
    text = await asyncio.to_thread(admin_dashboard_text, store)
    await update.message.reply_text(text, reply_markup=admin_dashboard_markup())


async def cmd_adminstats(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not is_admin(update):
        await update.message.reply_text(f"🚫 Доступ запрещён\n\nВаш ID: {update.effective_user.id}")
        return
    await update.message.reply_text(await asyncio.to_thread(admin_stats_text, get_engine(context).store))


async def cmd_cancel(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if sessions.finish(context.user_data):
        await update.message.reply_text("Редактирование отменено.")
        return
    await update.message.reply_text("Нечего отменять.")


def passwords_text(store: QuestStore) -> str:
    stored = {p["location"]: p["password"] for p in store.all_passwords()}
    rows = [
        f"{'✅' if loc in stored else '❌'} {location_label(loc)}: {stored.get(loc, 'не задан')}"
        for loc in ALL_LOCATIONS
    ]
    return lines("🔑 Пароли доступа к локациям", "", *rows, "", "Выберите локацию для настройки пароля:")


def missions_text(store: QuestStore) -> str:
    stored = {m["location"]: m for m in store.all_missions()}
    rows = [
        f"{'✅' if loc in stored else '❌'} {location_label(loc)}"
        + (f": ответ «{stored[loc]['answer']}»" if loc in stored else "")
        for loc in ALL_LOCATIONS
    ]
    return lines("📝 Задания", "", *rows, "", "Выберите локацию:")


def hints_text(store: QuestStore) -> str:
    rows = []
    for loc in ALL_LOCATIONS:
        levels = [str(h["hint_level"]) for h in store.hints_for_location(loc)]
        rows.append(f"{location_label(loc)}: уровни {', '.join(levels) if levels else '—'}")
    return lines("💡 Подсказки", "", *rows, "", "Выберите локацию:")


async def on_button(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    q = update.callback_query
    await q.answer()
    data = q.data or ""

    if not is_admin(update):
        await q.message.reply_text("🚫 Доступ запрещён")
        return

    store = get_engine(context).store

    if data == "admin_dashboard":
        text = await asyncio.to_thread(admin_dashboard_text, store)
        await q.edit_message_text(text, reply_markup=admin_dashboard_markup())
        return

    if data == "admin_passwords":
        text = await asyncio.to_thread(passwords_text, store)
        await q.edit_message_text(text, reply_markup=locations_markup("edit_password_"))
        return

    if data == "admin_missions":
        text = await asyncio.to_thread(missions_text, store)
        await q.edit_message_text(text, reply_markup=locations_markup("edit_mission_"))
        return

    if data == "admin_hints":
        text = await asyncio.to_thread(hints_text, store)
        await q.edit_message_text(text, reply_markup=locations_markup("hint_levels_"))
        return

    if data == "admin_stats":
        back = InlineKeyboardMarkup([[InlineKeyboardButton("🔙 Назад", callback_data="admin_dashboard")]])
        text = await asyncio.to_thread(admin_stats_text, store)
        await q.edit_message_text(text, reply_markup=back)
        return

    if data.startswith("edit_password_"):
        loc = data[len("edit_password_"):]
        if not is_location(loc):
            await q.message.reply_text("Локация не найдена")
            return
        sessions.begin(context.user_data, sessions.EDIT_PASSWORD, loc)
        await q.message.reply_text(lines(
            f"🔑 Пароль для «{location_label(loc)}»",
            "",
            f"Отправьте пароль (латиница, цифры, _; минимум {MIN_PASSWORD_LENGTH} символа).",
            "Регистр и пробелы при проверке не учитываются. /cancel — отмена.",
        ))
        return

    if data.startswith("edit_mission_"):
        loc = data[len("edit_mission_"):]
        if not is_location(loc):
            await q.message.reply_text("Локация не найдена")
            return
        sessions.begin(context.user_data, sessions.EDIT_MISSION, loc)
        await q.message.reply_text(f"📝 Задание для «{location_label(loc)}»\n\nОтправьте текст задания. /cancel — отмена.")
        return

    if data.startswith("hint_levels_"):
        loc = data[len("hint_levels_"):]
        if not is_location(loc):
            await q.message.reply_text("Локация не найдена")
            return
        kb = InlineKeyboardMarkup([
            [InlineKeyboardButton(f"Уровень {lvl}", callback_data=f"edit_hint_{lvl}_{loc}")
             for lvl in range(MIN_HINT_LEVEL, MAX_HINT_LEVEL + 1)],
            [InlineKeyboardButton("🔙 Назад", callback_data="admin_hints")],
        ])
        await q.edit_message_text(f"💡 Подсказки для «{location_label(loc)}»\n\nВыберите уровень:", reply_markup=kb)
        return

    if data.startswith("edit_hint_"):
        level_raw, _, loc = data[len("edit_hint_"):].partition("_")
        level = config.safe_int(level_raw, 0)
        if not is_location(loc) or not MIN_HINT_LEVEL <= level <= MAX_HINT_LEVEL:
            await q.message.reply_text("Локация не найдена")
            return
        sessions.begin(context.user_data, sessions.EDIT_HINT, loc, level=level)
        await q.message.reply_text(
            f"💡 Подсказка {level} для «{location_label(loc)}»\n\nОтправьте текст подсказки. /cancel — отмена."
        )
        return


async def handle_admin_input(update: Update, context: ContextTypes.DEFAULT_TYPE, state: Dict[str, Any]) -> None:
    store = get_engine(context).store
    text = update.message.text.strip()
    loc = state["location"]

    if state["kind"] == sessions.EDIT_PASSWORD:
        if len(text) < MIN_PASSWORD_LENGTH:
            await update.message.reply_text(f"⚠️ Пароль должен быть не менее {MIN_PASSWORD_LENGTH} символов. Попробуйте ещё раз:")
            return
        try:
            saved = await asyncio.to_thread(store.set_password, loc, text)
        except ContentIntegrityError as e:
            await update.message.reply_text(f"❌ {e}\nПопробуйте ещё раз:")
            return
        sessions.finish(context.user_data)
        await update.message.reply_text(lines(
            "✅ Пароль установлен!",
            "",
            f"Локация: {location_label(loc)}",
            f"Пароль: {saved['original']}",
            f"Проверяется как: {saved['normalized']}",
        ))
        text = await asyncio.to_thread(admin_dashboard_text, store)
        await update.message.reply_text(text, reply_markup=admin_dashboard_markup())
        return

    if state["kind"] == sessions.EDIT_HINT:
        try:
            await asyncio.to_thread(store.set_hint, loc, state["level"], text)
        except ContentIntegrityError as e:
            await update.message.reply_text(f"❌ {e}\nПопробуйте ещё раз:")
            return
        sessions.finish(context.user_data)
        await update.message.reply_text(f"✅ Подсказка {state['level']} для «{location_label(loc)}» сохранена.")
        text = await asyncio.to_thread(admin_dashboard_text, store)
        await update.message.reply_text(text, reply_markup=admin_dashboard_markup())
        return

    # mission wizard: text -> answer -> image
    if state["step"] == sessions.STEP_TEXT:
        sessions.advance(context.user_data, sessions.STEP_ANSWER, text=text)
        await update.message.reply_text("Теперь отправьте правильный ответ.")
        return

    if state["step"] == sessions.STEP_ANSWER:
        if is_placeholder_answer(text):
            await update.message.reply_text(
                f"❌ Ответ «{text}» для «{location_label(loc)}» отклонён: после нормализации он пуст. "
                "Отправьте ответ с буквами или цифрами:"
            )
            return
        sessions.advance(context.user_data, sessions.STEP_IMAGE, answer=text)
        await update.message.reply_text("Отправьте ссылку на картинку или «-», если её нет.")
        return

    image_url = None if text == "-" else text
    try:
        await asyncio.to_thread(store.set_mission, loc, state["data"]["text"], state["data"]["answer"], image_url)
    except ContentIntegrityError as e:
        sessions.finish(context.user_data)
        await update.message.reply_text(f"❌ Задание не сохранено: {e}")
        return
    sessions.finish(context.user_data)
    await update.message.reply_text(f"✅ Задание для «{location_label(loc)}» сохранено.")
    text = await asyncio.to_thread(admin_dashboard_text, store)
    await update.message.reply_text(text, reply_markup=admin_dashboard_markup())


# =========================
# TEXT HANDLER
# =========================
async def on_text(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if update.message is None or update.message.text is None:
        return

    if is_admin(update):
        state = sessions.current(context.user_data, config.ADMIN_SESSION_TTL)
        if state is not None:
            await handle_admin_input(update, context, state)
            return

    team = await require_team(update, context)
    if team is None:
        return

    current = expected_location(team)
    if current is None:
        await update.message.reply_text("🎉 Квест уже пройден! Спасибо за игру.")
        return

    if current not in team["unlocked"]:
        await try_password(update, context, team, update.message.text)
        return
    await try_answer(update, context, team, update.message.text)


# =========================
# ERROR HANDLER
# =========================
async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    if isinstance(context.error, StorageBusy):
        logger.warning(f"Storage busy: {context.error}")
        text = "⏳ Сервер занят, попробуйте ещё раз через минуту."
    else:
        logger.exception("Unhandled error:", exc_info=context.error)
        text = "⚠️ Что-то пошло не так. Попробуйте ещё раз."

    if isinstance(update, Update) and update.effective_chat is not None:
        await update.effective_chat.send_message(text)


# =========================
# MAIN
# =========================
def build_application(token: str, engine: QuestEngine) -> Application:
    persistence = PicklePersistence(
        filepath=config.PERSIST_FILE,
        store_data=PersistenceInput(bot_data=False, chat_data=False),
    )
    app = Application.builder().token(token).persistence(persistence).build()
    app.bot_data["engine"] = engine

    app.add_handler(CommandHandler("start", cmd_start))
    app.add_handler(CommandHandler("help", cmd_help))
    app.add_handler(CommandHandler("newteam", cmd_newteam))
    app.add_handler(CommandHandler("join", cmd_join))
    app.add_handler(CommandHandler(["stats", "route"], cmd_stats))
    app.add_handler(CommandHandler("password", cmd_password))
    app.add_handler(CommandHandler("mission", cmd_mission))
    app.add_handler(CommandHandler("answer", cmd_answer))
    app.add_handler(CommandHandler("hint", cmd_hint))

    app.add_handler(CommandHandler("admin", cmd_admin))
    app.add_handler(CommandHandler("adminstats", cmd_adminstats))
    app.add_handler(CommandHandler("cancel", cmd_cancel))

    app.add_handler(CallbackQueryHandler(on_button))
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, on_text))

    app.add_error_handler(error_handler)
    return app


def main() -> None:
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=logging.INFO
    )

    token = os.getenv(config.TOKEN_ENV)
    if not token:
        raise RuntimeError(f"Missing environment variable {config.TOKEN_ENV} with the bot token.")
    if not config.ADMIN_USER_IDS:
        logger.warning("ADMIN_USER_IDS is empty, nobody can configure the quest")

    store = QuestStore(config.DB_PATH, busy_timeout=config.DB_BUSY_TIMEOUT)
    store.init_db()
    engine = QuestEngine(store, max_hints=config.MAX_HINTS, max_team_size=config.MAX_TEAM_SIZE)

    # 1) Mini App API + health on PORT (separate thread)
    t = threading.Thread(
        target=start_api_server,
        args=(engine, token, config.PORT),
        kwargs={"max_age": config.INIT_DATA_MAX_AGE},
        daemon=True,
    )
    t.start()

    # 2) Bot (polling)
    app = build_application(token, engine)
    logger.info(f"Bot started, admins: {config.ADMIN_USER_IDS}")
    app.run_polling(allowed_updates=Update.ALL_TYPES)


if __name__ == "__main__":
    main()
