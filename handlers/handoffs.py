from aiogram import Bot, types, F, Router
from aiogram.filters import BaseFilter, Command, CommandObject, StateFilter
from aiogram.fsm.context import FSMContext
from aiogram.utils.deep_linking import create_start_link
from aiogram.exceptions import TelegramAPIError
from loguru import logger

from collection.coordinator import CollectionCoordinator
from collection.models import Actor, HandoffReceipt, HandoffType, Receiver
from keyboards.collection_keyboards import get_handoff_actions_keyboard, get_plant_choice_keyboard
from keyboards.common import PHONE_RECEIVER
from keyboards.reply_keyboards import HANDOFF_TEXT, driver_menu_keyboard, fsm_cancel_keyboard
from states.fsm_states import HandoffState
from utils.callback_factories import HandoffAction, PlantChoice
from utils.validators import is_valid_phone
from .collection import IsDriver
from .common.helpers import confirmation_url, format_handoff, safe_edit_or_send


class IsStaff(BaseFilter):
    async def __call__(self, event: types.TelegramObject, actor: Actor | None = None) -> bool:
        return actor is not None and actor.is_staff


class IsKnownUser(BaseFilter):
    async def __call__(self, event: types.TelegramObject, actor: Actor | None = None) -> bool:
        return actor is not None


router = Router()


async def _send_receipt(message: types.Message, receipt: HandoffReceipt, confirm_url: str) -> None:
    await message.answer(
        format_handoff(receipt.handoff)
        + "\n🔐 Посилання для отримувача діє обмежений час і спрацьовує лише один раз. "
          "Не пересилайте його стороннім.",
        reply_markup=get_handoff_actions_keyboard(receipt.handoff, confirm_url)
    )


async def _send_driver_link(bot: Bot, message: types.Message, receipt: HandoffReceipt, driver_link: str) -> None:
    driver_id = receipt.handoff.receiver.driver_id
    try:
        await bot.send_message(
            driver_id,
            "📦 Заклад передає вам відходи.\n\n" + format_handoff(receipt.handoff)
            + f"\nПісля отримання підтвердіть прийом за посиланням:\n{driver_link}"
        )
    except TelegramAPIError as e:
        logger.warning(f"Could not send the handoff link to driver {driver_id}: {e}")
        await message.answer("⚠️ Не вдалося надіслати посилання водію, передайте його вручну.")


# --- Facility -> driver (supervisor) ---

@router.message(Command('facility_handoff'), IsStaff())
async def facility_handoff_handler(message: types.Message, command: CommandObject, bot: Bot,
                                   coordinator: CollectionCoordinator, actor: Actor) -> None:
    """Supervisor hands the collected containers of a session over to its driver."""
    session_id = (command.args or '').strip()
    if not session_id:
        await message.answer("Вкажіть номер сесії: <code>/facility_handoff SESSION-...</code>")
        return
    receipt = await coordinator.create_handoff(actor, session_id, HandoffType.FACILITY_TO_DRIVER)
    driver_link = await create_start_link(bot, f"h_{receipt.confirmation_token}")
    await _send_receipt(message, receipt, driver_link)
    await _send_driver_link(bot, message, receipt, driver_link)


# --- Driver -> incinerator ---

@router.message(F.text == HANDOFF_TEXT, IsDriver(), StateFilter(None))
async def incinerator_handoff_handler(message: types.Message, state: FSMContext,
                                      coordinator: CollectionCoordinator, actor: Actor) -> None:
    session = await coordinator.get_latest_session(actor)
    plants = await coordinator.list_incineration_plants()
    await state.set_state(HandoffState.choose_receiver)
    await state.update_data(session_id=session.session_id)
    await message.answer("Оберіть завод утилізації або вкажіть телефон отримувача:",
                         reply_markup=get_plant_choice_keyboard(plants))


async def _create_incinerator_handoff(target: types.Message, state: FSMContext, coordinator: CollectionCoordinator,
                                      actor: Actor, receiver: Receiver) -> None:
    data = await state.get_data()
    await state.clear()
    receipt = await coordinator.create_handoff(
        actor, data['session_id'], HandoffType.DRIVER_TO_INCINERATOR, receiver
    )
    await _send_receipt(target, receipt, confirmation_url(receipt.confirmation_token))


@router.callback_query(HandoffState.choose_receiver, PlantChoice.filter(F.plant_id == PHONE_RECEIVER))
async def phone_receiver_handler(call: types.CallbackQuery, state: FSMContext) -> None:
    await state.set_state(HandoffState.receiver_phone)
    await safe_edit_or_send(call, "Введіть номер телефону отримувача:")
    await call.message.answer("Наприклад: +7 701 234 56 78", reply_markup=fsm_cancel_keyboard)


@router.callback_query(HandoffState.choose_receiver, PlantChoice.filter())
async def plant_receiver_handler(call: types.CallbackQuery, callback_data: PlantChoice, state: FSMContext,
                                 coordinator: CollectionCoordinator, actor: Actor) -> None:
    await call.answer()
    await call.message.edit_reply_markup(reply_markup=None)
    await _create_incinerator_handoff(call.message, state, coordinator, actor, Receiver.plant(callback_data.plant_id))


@router.message(HandoffState.receiver_phone, F.text)
async def receiver_phone_handler(message: types.Message, state: FSMContext,
                                 coordinator: CollectionCoordinator, actor: Actor) -> None:
    if not is_valid_phone(message.text):
        await message.answer("Некоректний номер телефону. Спробуйте ще раз.")
        return
    await _create_incinerator_handoff(message, state, coordinator, actor, Receiver.contact(message.text))
    await message.answer("Меню водія:", reply_markup=driver_menu_keyboard)


# --- Sender actions ---

@router.callback_query(HandoffAction.filter(F.action == 'confirm'), IsKnownUser())
async def confirm_sender_handler(call: types.CallbackQuery, callback_data: HandoffAction,
                                 coordinator: CollectionCoordinator, actor: Actor) -> None:
    handoff = await coordinator.confirm_handoff(actor, callback_data.handoff_id)
    await safe_edit_or_send(call, format_handoff(handoff), reply_markup=get_handoff_actions_keyboard(handoff))


@router.callback_query(HandoffAction.filter(F.action == 'reject'), IsKnownUser())
async def reject_start_handler(call: types.CallbackQuery, callback_data: HandoffAction, state: FSMContext) -> None:
    await state.set_state(HandoffState.reject_reason)
    await state.update_data(handoff_id=callback_data.handoff_id)
    await call.answer()
    await call.message.answer("Вкажіть причину відхилення:", reply_markup=fsm_cancel_keyboard)


@router.message(HandoffState.reject_reason, F.text)
async def reject_reason_handler(message: types.Message, state: FSMContext,
                                coordinator: CollectionCoordinator, actor: Actor) -> None:
    data = await state.get_data()
    await state.clear()
    handoff = await coordinator.reject_handoff(actor, data['handoff_id'], message.text.strip())
    await message.answer(format_handoff(handoff), reply_markup=types.ReplyKeyboardRemove())


@router.callback_query(HandoffAction.filter(F.action == 'reissue'), IsKnownUser())
async def reissue_link_handler(call: types.CallbackQuery, callback_data: HandoffAction, bot: Bot,
                               coordinator: CollectionCoordinator, actor: Actor) -> None:
    """The receiver's link expired or got lost: a new one replaces it, the old one stops working."""
    receipt = await coordinator.reissue_confirmation_token(actor, callback_data.handoff_id)
    await call.answer()
    if receipt.handoff.type == HandoffType.FACILITY_TO_DRIVER:
        link = await create_start_link(bot, f"h_{receipt.confirmation_token}")
        await _send_receipt(call.message, receipt, link)
        await _send_driver_link(bot, call.message, receipt, link)
    else:
        await _send_receipt(call.message, receipt, confirmation_url(receipt.confirmation_token))
