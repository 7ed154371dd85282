from aiogram import types, F, Router
from aiogram.filters import Command, CommandObject, CommandStart, StateFilter
from aiogram.fsm.context import FSMContext
import html

from collection.coordinator import CollectionCoordinator
from collection.models import Actor
from keyboards.reply_keyboards import CANCEL_TEXT, driver_menu_keyboard
from .common.helpers import format_active_sessions, format_handoff, format_public_view, format_summary, format_trail

router = Router()

WELCOME_TEXT = (
    '<b>Облік збору медичних відходів</b>\n\n'
    '📜 <b>Що тут можна зробити:</b>\n'
    '• Розпочати збір і відмічати контейнери\n'
    '• Транслювати маршрут під час збору\n'
    '• Передати відходи на утилізацію з підтвердженням отримувача'
)

STAFF_HELP_TEXT = (
    '<b>Команди супервайзера:</b>\n'
    '/facility_handoff <code>SESSION-...</code> — передати контейнери водію\n'
    '/chain <code>SESSION-...</code> — ланцюг передачі та перевірка журналу\n'
    '/active — активні збори та остання точка кожного'
)


def _menu_for(actor: Actor | None):
    return driver_menu_keyboard if actor and actor.is_driver else types.ReplyKeyboardRemove()


@router.message(CommandStart(deep_link=True, magic=F.args.startswith('h_')))
async def confirm_by_link_handler(message: types.Message, command: CommandObject,
                                  coordinator: CollectionCoordinator, actor: Actor | None = None) -> None:
    """Receiver opened the confirmation deep link: the token itself authorizes the transfer."""
    handoff = await coordinator.confirm_by_token(command.args[2:], actor)
    await message.answer("✅ Прийом підтверджено.\n\n" + format_handoff(handoff), reply_markup=_menu_for(actor))


@router.message(CommandStart())
async def menu_handler(message: types.Message, state: FSMContext, actor: Actor | None = None) -> None:
    """
    Handles the /start command: greets the user and shows the menu for their role.
    """
    await state.clear()
    text = f"<b>Привіт, {html.escape(message.from_user.first_name)}!</b>\n\n" + WELCOME_TEXT
    if actor is None:
        text += "\n\nВас ще не зареєстровано. Зверніться до адміністратора, вказавши ваш ID: " \
                f"<code>{message.from_user.id}</code>"
    elif actor.is_staff:
        text += "\n\n" + STAFF_HELP_TEXT
    await message.answer(text, reply_markup=_menu_for(actor))


@router.message(Command('stop'))
@router.message(F.text == CANCEL_TEXT, StateFilter('*'))
async def stop_command_handler(message: types.Message, state: FSMContext, actor: Actor | None = None) -> None:
    """
    Cancels any active FSM state and returns the user to the menu.
    """
    await state.clear()
    await message.answer("✅ Дію скасовано.", reply_markup=_menu_for(actor))


@router.callback_query(F.data == "stop_fsm")
async def stop_fsm_callback_handler(call: types.CallbackQuery, state: FSMContext) -> None:
    await state.clear()
    await call.message.edit_text("✅ Дію скасовано.", reply_markup=None)
    await call.answer()


@router.message(Command('verify'))
async def verify_handler(message: types.Message, command: CommandObject, coordinator: CollectionCoordinator) -> None:
    """Public receipt check by token; works for anyone holding the link, also after confirmation."""
    token = (command.args or '').strip()
    if token.startswith('h_'):
        token = token[2:]
    if not token:
        await message.answer("Вкажіть токен: <code>/verify TOKEN</code>")
        return
    view = await coordinator.get_public_handoff(token)
    await message.answer(format_public_view(view))


@router.message(Command('chain'))
async def chain_handler(message: types.Message, command: CommandObject,
                        coordinator: CollectionCoordinator, actor: Actor | None = None) -> None:
    session_id = (command.args or '').strip()
    if actor is None or not session_id:
        await message.answer("Вкажіть номер сесії: <code>/chain SESSION-...</code>")
        return
    summary = await coordinator.get_session_summary(actor, session_id)
    verification = await coordinator.verify_custody_trail(actor, session_id)
    await message.answer(format_summary(summary) + "\n" + format_trail(verification))


@router.message(Command('active'))
async def active_sessions_handler(message: types.Message, coordinator: CollectionCoordinator,
                                  actor: Actor | None = None) -> None:
    """Staff overview of collections in progress; a supervisor sees their own company only."""
    if actor is None or not actor.is_staff:
        await message.answer("⛔️ У вас немає доступу до цієї дії.")
        return
    items = await coordinator.list_active_sessions(actor)
    await message.answer(format_active_sessions(items))
