import asyncio
import signal
from aiogram import Bot, Dispatcher
from aiogram.enums import ParseMode
from aiogram.client.default import DefaultBotProperties
from aiogram.types import BotCommand, BotCommandScopeDefault, BotCommandScopeChat
from aiogram.exceptions import TelegramConflictError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

from config.config import (
    TOKEN, ADMIN_IDS, TIMEZONE, LOCATION_MIN_INTERVAL_SECONDS, HANDOFF_TOKEN_TTL_HOURS,
    VISIT_PROXIMITY_METERS, INACTIVITY_CHECK_SECONDS, require_bot_settings
)
from config.logging_config import setup_logging
from collection.coordinator import CollectionCoordinator
from collection.events import EventDispatcher
from database.db import init_db
from handlers import setup_routers
from handlers.middlewares.identity_middleware import IdentityMiddleware
from handlers.middlewares.logging_middleware import LoggingMiddleware
from handlers.notifier import TelegramRelay
from handlers.scheduler import check_inactive_sessions

# Глобальные переменные для корректного завершения
bot = None
scheduler = None

# Настраиваем логирование при старте приложения
setup_logging()

async def set_bot_commands(bot: Bot):
    """Встановлює меню команд для різних типів користувачів."""
    user_commands = [
        BotCommand(command="start", description="🚀 Головне меню"),
        BotCommand(command="verify", description="🔎 Перевірити передачу за токеном"),
        BotCommand(command="chain", description="🔗 Ланцюг передачі сесії"),
        BotCommand(command="stop", description="🚫 Скасувати поточну дію"),
    ]
    await bot.set_my_commands(user_commands, BotCommandScopeDefault())

    admin_commands = user_commands + [
        BotCommand(command="facility_handoff", description="📦 Передача від закладу водію"),
        BotCommand(command="sessions", description="📋 Збори водія"),
        BotCommand(command="add_driver", description="➕ Зареєструвати водія"),
        BotCommand(command="add_supervisor", description="➕ Зареєструвати супервайзера"),
        BotCommand(command="add_container", description="➕ Додати контейнер"),
        BotCommand(command="add_plant", description="➕ Додати завод утилізації"),
    ]
    for admin_id in ADMIN_IDS:
        try:
            await bot.set_my_commands(admin_commands, BotCommandScopeChat(chat_id=admin_id))
        except Exception as e:
            logger.warning(f"Не вдалося встановити команди для адміністратора {admin_id}: {e}")

async def graceful_shutdown(dp: Dispatcher):
    """Корректное завершение работы бота."""
    logger.info("Початок корректного завершення роботи бота...")

    if scheduler and scheduler.running:
        try:
            scheduler.shutdown(wait=False)
            logger.info("Планувальник зупинено")
        except Exception as e:
            logger.error(f"Помилка при зупинці планувальника: {e}")

    try:
        await dp.stop_polling()
        logger.info("Polling зупинено")
    except Exception as e:
        logger.error(f"Помилка при зупинці polling: {e}")

    if bot:
        try:
            await bot.session.close()
            logger.info("Сесія бота закрита")
        except Exception as e:
            logger.error(f"Помилка при закритті сесії бота: {e}")

    logger.info("Корректне завершення роботи завершено.")

async def start_bot(dp: Dispatcher):
    global bot, scheduler

    bot = Bot(TOKEN, default=DefaultBotProperties(parse_mode=ParseMode.HTML))
    bot_info = await bot.get_me()

    try:
        await bot.delete_webhook(drop_pending_updates=True)
        logger.info("Попередній вебхук видалено.")
    except Exception as e:
        logger.warning(f"Не вдалося видалити вебхук: {e}")

    logger.info("Ініціалізація бази даних...")
    await init_db()
    logger.info("Базу даних ініціалізовано.")

    # Ядро: один координатор на процесс, события уходят в Telegram после фиксации изменений
    events = EventDispatcher()
    events.subscribe(TelegramRelay(bot, ADMIN_IDS))
    dp['coordinator'] = CollectionCoordinator.build(
        events=events,
        min_interval_seconds=LOCATION_MIN_INTERVAL_SECONDS,
        token_ttl_hours=HANDOFF_TOKEN_TTL_HOURS,
        visit_proximity_meters=VISIT_PROXIMITY_METERS,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda: asyncio.create_task(graceful_shutdown(dp)))
        except NotImplementedError:
            # На Windows може не підтримуватися для SIGTERM
            pass

    scheduler = AsyncIOScheduler(timezone=TIMEZONE)
    scheduler.add_job(check_inactive_sessions, trigger='interval', seconds=INACTIVITY_CHECK_SECONDS, kwargs={'bot': bot})
    scheduler.start()

    await set_bot_commands(bot)

    # Применяем middleware ко всем типам событий: сначала контекст логов, затем роль пользователя
    dp.update.outer_middleware(LoggingMiddleware())
    dp.update.outer_middleware(IdentityMiddleware())

    try:
        logger.info("Запуск бота...")
        await dp.start_polling(bot)
    except TelegramConflictError:
        logger.critical(
            f"Виявлено конфлікт для бота @{bot_info.username} (ID: {bot_info.id}). "
            "Інший екземпляр бота вже запущений."
        )
    finally:
        await graceful_shutdown(dp)

async def main():
    require_bot_settings()
    dp = Dispatcher()

    main_router, admin_router, errors_router = setup_routers()
    dp.include_router(main_router)
    dp.include_router(admin_router)
    # Роутер для обработки ошибок должен быть последним
    dp.include_router(errors_router)

    await start_bot(dp)

if __name__ == '__main__':
    asyncio.run(main())
