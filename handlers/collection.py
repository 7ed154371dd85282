from datetime import datetime, timezone

from aiogram import types, F, Router
from aiogram.filters import BaseFilter, StateFilter
from aiogram.fsm.context import FSMContext
from loguru import logger

from collection.coordinator import CollectionCoordinator
from collection.errors import SessionNotActive, SessionNotFound
from collection.models import Actor, GeoPoint
from keyboards.collection_keyboards import get_checklist_keyboard, get_summary_keyboard
from keyboards.reply_keyboards import (
    START_COLLECTION_TEXT, MY_COLLECTION_TEXT, STOP_COLLECTION_TEXT, SKIP_TEXT,
    driver_menu_keyboard, fsm_cancel_keyboard, location_or_skip_keyboard
)
from states.fsm_states import CollectionState
from utils.callback_factories import MarkVisited, SummaryRefresh
from utils.validators import parse_container_refs
from .common.helpers import format_route, format_session, format_summary, safe_edit_or_send


class IsDriver(BaseFilter):
    async def __call__(self, event: types.TelegramObject, actor: Actor | None = None) -> bool:
        """
        Checks if the user is a registered driver.
        """
        return actor is not None and actor.is_driver


router = Router()
router.message.filter(IsDriver())
router.edited_message.filter(IsDriver())
router.callback_query.filter(IsDriver())


def location_fix(location: types.Location, message: types.Message) -> dict:
    """Telegram location -> raw fix payload; validation happens in the core."""
    return {
        'latitude': location.latitude,
        'longitude': location.longitude,
        'accuracy': location.horizontal_accuracy,
        'heading': location.heading,
        # edit_date приходит секундами, date уже datetime
        'timestamp': datetime.fromtimestamp(message.edit_date, tz=timezone.utc) if message.edit_date else message.date,
    }


# --- Start of a session ---

@router.message(F.text == START_COLLECTION_TEXT, StateFilter(None))
async def start_collection_handler(message: types.Message, state: FSMContext) -> None:
    await state.set_state(CollectionState.containers)
    await message.answer(
        "Введіть номери контейнерів для збору через кому або пробіл.\n"
        "Наприклад: <code>BIN-001, BIN-002</code>",
        reply_markup=fsm_cancel_keyboard
    )


@router.message(CollectionState.containers, F.text)
async def containers_entered_handler(message: types.Message, state: FSMContext) -> None:
    refs = parse_container_refs(message.text)
    if not refs:
        await message.answer("Не знайшов жодного номера контейнера. Спробуйте ще раз.")
        return
    await state.update_data(container_refs=refs)
    await state.set_state(CollectionState.start_location)
    await message.answer(
        f"Контейнерів: {len(refs)}. Надішліть місце старту або пропустіть цей крок.",
        reply_markup=location_or_skip_keyboard
    )


async def _begin(message: types.Message, state: FSMContext, coordinator: CollectionCoordinator,
                 actor: Actor, start_location: GeoPoint | None) -> None:
    data = await state.get_data()
    await state.clear()
    session = await coordinator.start_collection(actor, data.get('container_refs', []), start_location)
    await message.answer(
        "✅ Збір розпочато. Увімкніть трансляцію геолокації, щоб маршрут записувався.",
        reply_markup=driver_menu_keyboard
    )
    await message.answer(format_session(session), reply_markup=get_checklist_keyboard(session))


@router.message(CollectionState.start_location, F.location)
async def start_location_handler(message: types.Message, state: FSMContext,
                                 coordinator: CollectionCoordinator, actor: Actor) -> None:
    point = GeoPoint(message.location.latitude, message.location.longitude)
    await _begin(message, state, coordinator, actor, point)


@router.message(CollectionState.start_location, F.text == SKIP_TEXT)
async def skip_start_location_handler(message: types.Message, state: FSMContext,
                                      coordinator: CollectionCoordinator, actor: Actor) -> None:
    await _begin(message, state, coordinator, actor, None)


# --- Checklist ---

@router.callback_query(MarkVisited.filter())
async def mark_visited_handler(call: types.CallbackQuery, callback_data: MarkVisited,
                               coordinator: CollectionCoordinator, actor: Actor) -> None:
    session = await coordinator.get_active_session(actor)
    session = await coordinator.mark_visited(actor, session.session_id, callback_data.ref)
    await safe_edit_or_send(call, format_session(session), reply_markup=get_checklist_keyboard(session))


@router.callback_query(SummaryRefresh.filter(F.action == 'refresh'))
async def refresh_summary_handler(call: types.CallbackQuery, coordinator: CollectionCoordinator, actor: Actor) -> None:
    session = await coordinator.get_latest_session(actor)
    if session.is_active:
        await safe_edit_or_send(call, format_session(session), reply_markup=get_checklist_keyboard(session))
    else:
        summary = await coordinator.get_session_summary(actor, session.session_id)
        await safe_edit_or_send(call, format_summary(summary), reply_markup=get_summary_keyboard())


@router.callback_query(SummaryRefresh.filter(F.action == 'route'))
async def route_handler(call: types.CallbackQuery, coordinator: CollectionCoordinator, actor: Actor) -> None:
    session = await coordinator.get_latest_session(actor)
    route = await coordinator.get_route(actor, session.session_id)
    await call.answer()
    await call.message.answer(format_route(route))


@router.message(F.text == MY_COLLECTION_TEXT, StateFilter(None))
async def my_collection_handler(message: types.Message, coordinator: CollectionCoordinator, actor: Actor) -> None:
    try:
        session = await coordinator.get_latest_session(actor)
    except SessionNotFound:
        await message.answer("У вас ще не було жодного збору.", reply_markup=driver_menu_keyboard)
        return
    if session.is_active:
        await message.answer(format_session(session), reply_markup=get_checklist_keyboard(session))
        return
    summary = await coordinator.get_session_summary(actor, session.session_id)
    await message.answer(format_summary(summary), reply_markup=get_summary_keyboard())


@router.message(F.text == STOP_COLLECTION_TEXT, StateFilter(None))
async def stop_collection_handler(message: types.Message, coordinator: CollectionCoordinator, actor: Actor) -> None:
    session = await coordinator.get_active_session(actor)
    session = await coordinator.stop_collection(actor, session.session_id)
    await message.answer(
        "🏁 Збір завершено.\n\n" + format_session(session),
        reply_markup=driver_menu_keyboard
    )


# --- Live location ---

@router.message(F.location, StateFilter(None))
async def location_handler(message: types.Message, coordinator: CollectionCoordinator, actor: Actor) -> None:
    session = await coordinator.get_active_session(actor)
    result = await coordinator.record_location(actor, session.session_id, location_fix(message.location, message))
    if message.location.live_period is None:
        # Разова точка: водію потрібне підтвердження
        text = "📍 Точку збережено." if result.accepted else "📍 Занадто часто, точку пропущено."
        await message.answer(text)


@router.edited_message(F.location)
async def live_location_handler(message: types.Message, coordinator: CollectionCoordinator, actor: Actor) -> None:
    """Live location updates arrive as edits; a stopped or missing session just ends the stream quietly."""
    try:
        session = await coordinator.get_active_session(actor)
        await coordinator.record_location(actor, session.session_id, location_fix(message.location, message))
    except (SessionNotFound, SessionNotActive):
        logger.debug("Live location update without an active session")
