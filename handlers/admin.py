from aiogram import types, Router
from aiogram.filters import BaseFilter, Command, CommandObject
import html

from collection.coordinator import CollectionCoordinator
from collection.models import Actor
from database import queries as db_queries
from utils.validators import is_valid_phone, normalize_phone, parse_point
from collection.errors import InvalidLocation
from .common.helpers import format_local

router = Router()


class IsAdmin(BaseFilter):
    """
    Custom filter to check if a user is an admin.
    """
    async def __call__(self, event: types.TelegramObject, actor: Actor | None = None) -> bool:
        return actor is not None and actor.role == 'admin'


router.message.filter(IsAdmin())


def _split(command: CommandObject, minimum: int) -> list[str] | None:
    parts = (command.args or '').split()
    return parts if len(parts) >= minimum else None


@router.message(Command('add_driver'))
async def add_driver_handler(message: types.Message, command: CommandObject) -> None:
    """/add_driver <user_id> <ПІБ>"""
    parts = _split(command, 2)
    if not parts or not parts[0].isdigit():
        await message.answer("Формат: <code>/add_driver USER_ID Прізвище Ім'я</code>")
        return
    await db_queries.register_driver(int(parts[0]), " ".join(parts[1:]))
    await message.answer(f"✅ Водія <code>{parts[0]}</code> зареєстровано.")


@router.message(Command('add_supervisor'))
async def add_supervisor_handler(message: types.Message, command: CommandObject) -> None:
    """/add_supervisor <user_id> <company_id> <ПІБ>"""
    parts = _split(command, 3)
    if not parts or not parts[0].isdigit():
        await message.answer("Формат: <code>/add_supervisor USER_ID COMPANY_ID Прізвище Ім'я</code>")
        return
    await db_queries.register_supervisor(int(parts[0]), " ".join(parts[2:]), parts[1])
    await message.answer(f"✅ Супервайзера <code>{parts[0]}</code> зареєстровано.")


@router.message(Command('add_container'))
async def add_container_handler(message: types.Message, command: CommandObject) -> None:
    """/add_container <ref> <lat> <lon> [company_id]"""
    parts = _split(command, 3)
    if not parts:
        await message.answer("Формат: <code>/add_container BIN-001 43.2389 76.8897 [COMPANY]</code>")
        return
    try:
        point = parse_point({'latitude': parts[1], 'longitude': parts[2]})
    except InvalidLocation:
        await message.answer("❌ Некоректні координати.")
        return
    company_id = parts[3] if len(parts) > 3 else None
    await db_queries.upsert_container(parts[0], company_id, 'medical', point.latitude, point.longitude)
    await message.answer(f"✅ Контейнер <code>{html.escape(parts[0])}</code> збережено.")


@router.message(Command('add_plant'))
async def add_plant_handler(message: types.Message, command: CommandObject) -> None:
    """/add_plant <plant_id> <operator_phone> <назва>"""
    parts = _split(command, 3)
    if not parts or not is_valid_phone(parts[1]):
        await message.answer("Формат: <code>/add_plant PLANT-1 +77011234567 Назва заводу</code>")
        return
    await db_queries.upsert_plant(parts[0], " ".join(parts[2:]), operator_phone=normalize_phone(parts[1]))
    await message.answer(f"✅ Завод <code>{html.escape(parts[0])}</code> збережено.")


@router.message(Command('sessions'))
async def driver_sessions_handler(message: types.Message, command: CommandObject,
                                  coordinator: CollectionCoordinator, actor: Actor) -> None:
    """/sessions <driver_id>: latest sessions of a driver, newest first."""
    parts = _split(command, 1)
    if not parts or not parts[0].isdigit():
        await message.answer("Формат: <code>/sessions DRIVER_ID</code>")
        return
    sessions = await coordinator.list_sessions(actor, int(parts[0]), limit=10)
    if not sessions:
        await message.answer("У водія ще немає зборів.")
        return
    text = "<b>Останні збори:</b>\n"
    for session in sessions:
        status = "🟢" if session.is_active else "🏁"
        text += (
            f"{status} <code>{session.session_id}</code> {format_local(session.start_time)} — "
            f"{len(session.visited_containers())}/{len(session.selected_containers)}\n"
        )
    await message.answer(text)
