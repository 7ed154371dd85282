from aiogram import Router, types
from aiogram.filters import ExceptionTypeFilter
from aiogram.fsm.context import FSMContext
from loguru import logger
import html
import re
import traceback

from collection.errors import CollectionError
from config.config import ADMIN_IDS

router = Router()

# Локализованные ответы на типизированные ошибки ядра
ERROR_MESSAGES = {
    'already_active': "⚠️ У вас вже є активний збір. Завершіть його, перш ніж почати новий.",
    'not_active': "⚠️ Цей збір уже завершено, зміни неможливі.",
    'duplicate_type': "⚠️ Передача цього типу для сесії вже існує.",
    'wrong_status': "⚠️ Передача вже в іншому статусі. Оновіть дані.",
    'prior_stage_incomplete': "⚠️ Спочатку заклад має завершити передачу відходів водію.",
    'session_not_found': "🔍 Сесію збору не знайдено.",
    'handoff_not_found': "🔍 Передачу не знайдено.",
    'plant_not_found': "🔍 Завод утилізації не знайдено або він неактивний.",
    'unknown_container': "🔍 Цього контейнера немає у вашому зборі.",
    'invalid_container': "❌ Невідомі номери контейнерів: {unknown}",
    'invalid_containers': "❌ Ці контейнери не були відвідані: {containers}",
    'empty_containers': "❌ Немає жодного контейнера для цієї дії.",
    'invalid_location': "❌ Некоректні координати.",
    'invalid_receiver': "❌ Некоректний отримувач.",
    'validation': "❌ Некоректні дані.",
    'invalid_token': "🔐 Посилання недійсне, прострочене або вже використане.",
    'forbidden': "⛔️ У вас немає доступу до цієї дії.",
    'unavailable': "⏳ Сервіс тимчасово недоступний. Спробуйте ще раз за хвилину.",
}
DEFAULT_ERROR_MESSAGE = "😔 Вибачте, сталася непередбачена помилка. Ми вже працюємо над її виправленням."

# Похожие на токен подтверждения строки не попадают в логи
_TOKEN_LIKE = re.compile(r'[A-Za-z0-9_-]{20,}')
_LOGGED_TEXT_LIMIT = 100


def error_message(error: CollectionError) -> str:
    template = ERROR_MESSAGES.get(error.code, DEFAULT_ERROR_MESSAGE)
    values = {
        key: ", ".join(map(str, value)) if isinstance(value, (list, tuple)) else value
        for key, value in error.details.items()
    }
    try:
        return template.format(**values)
    except (KeyError, IndexError):
        return template.split(':')[0] + "."


def redact_text(text: str | None) -> str:
    if not text:
        return ''
    return _TOKEN_LIKE.sub('<redacted>', text)[:_LOGGED_TEXT_LIMIT]


async def _reply(event: types.ErrorEvent, text: str):
    if event.update.callback_query:
        await event.update.callback_query.answer()
        await event.update.callback_query.message.answer(text)
    elif event.update.message:
        await event.update.message.answer(text)


@router.errors(ExceptionTypeFilter(CollectionError))
async def collection_error_handler(event: types.ErrorEvent):
    """Expected failures of the core: a localized answer, no admin alert."""
    error = event.exception
    # InvalidToken уже залогирован ядром с security=True
    if error.kind != 'security':
        logger.warning(f"{type(error).__name__}: {error}")
    await _reply(event, error_message(error))
    return True


# Этот обработчик будет ловить ВСЕ исключения, которые не были пойманы в других местах
@router.errors()
async def errors_handler(exception: types.ErrorEvent):
    """
    Catches all exceptions from routers and handlers.
    Logs the error and notifies admins.
    """
    # Логируем полное исключение
    logger.exception(f"Cause exception: {exception.exception}")

    # Формируем сообщение для администраторов
    tb_str = traceback.format_exception(type(exception.exception), exception.exception, exception.exception.__traceback__)
    error_text = "".join(tb_str)

    # Обрезаем слишком длинные сообщения
    if len(error_text) > 4000:
        error_text = error_text[-4000:]
    error_message_text = f"<b>❗️ Unhandled Error</b>\n\n<pre>{html.escape(error_text)}</pre>"

    # Отправляем сообщение всем администраторам
    for admin_id in ADMIN_IDS:
        try:
            await exception.update.bot.send_message(admin_id, error_message_text)
        except Exception as e:
            logger.error(f"Failed to send error notification to admin {admin_id}: {e}")

    await _reply(exception, DEFAULT_ERROR_MESSAGE)
    return True # Сообщаем aiogram, что ошибка обработана

@router.callback_query()
async def unhandled_callback_handler(callback: types.CallbackQuery):
    """
    Ловит все необработанные callback-запросы (например, от старых сообщений).
    Это предотвращает "зависание" кнопок в состоянии загрузки.
    """
    logger.warning(f"Необработанный callback: data='{callback.data}' от user_id={callback.from_user.id}")
    await callback.answer("Ця кнопка вже неактуальна, або сталася помилка.", show_alert=True)

@router.message()
async def unhandled_message_handler(message: types.Message, state: FSMContext) -> None:
    """
    Catches all unhandled text messages and always replies.
    """
    logger.warning(f"Unhandled message: '{redact_text(message.text)}' from user_id={message.from_user.id}. Current state: {await state.get_state()}")
    await message.answer('Такої команди немає :(\n\nСпробуйте ще раз, або поверніться в /start.')
