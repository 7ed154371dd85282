import asyncio
from typing import Callable, Coroutine, Any
from aiogram.exceptions import TelegramAPIError
from loguru import logger

BATCH_SIZE = 25  # Telegram: ~30 messages per second per bot
DELAY_BETWEEN_BATCHES = 1.1


async def broadcast_messages(
    user_ids: list[int],
    send_function: Callable[[int], Coroutine[Any, Any, Any]],
) -> tuple[int, int]:
    """
    Sends messages to a list of users in batches to avoid hitting Telegram's rate limits.
    Failures are counted and logged, never raised.

    Returns:
        A tuple of (success_count, fail_count).
    """
    user_ids = list(dict.fromkeys(user_ids))
    if not user_ids:
        return 0, 0

    success_count = 0
    fail_count = 0
    for i in range(0, len(user_ids), BATCH_SIZE):
        batch = user_ids[i:i + BATCH_SIZE]

        # Создаем задачи для параллельной отправки сообщений в пакете
        results = await asyncio.gather(*(send_function(user_id) for user_id in batch), return_exceptions=True)

        for user_id, result in zip(batch, results):
            if isinstance(result, Exception):
                fail_count += 1
                if isinstance(result, TelegramAPIError):
                    logger.warning(f"Notification to {user_id} failed: {result}")
                else:
                    logger.error(f"Notification to {user_id} failed with an unexpected error: {result}")
            else:
                success_count += 1

        if i + BATCH_SIZE < len(user_ids):
            await asyncio.sleep(DELAY_BETWEEN_BATCHES)

    return success_count, fail_count
