from typing import Callable, Dict, Any, Awaitable
from aiogram import BaseMiddleware
from aiogram.types import TelegramObject
from loguru import logger

from collection.models import Actor, ROLE_ADMIN, ROLE_DRIVER, ROLE_SUPERVISOR
from config.config import ADMIN_IDS
from database import queries as db_queries


async def resolve_actor(user_id: int) -> Actor | None:
    """Role of a Telegram user: admin from config, then supervisor and driver registries."""
    if user_id in ADMIN_IDS:
        return Actor(user_id, ROLE_ADMIN)
    supervisor = await db_queries.get_supervisor(user_id)
    if supervisor is not None:
        return Actor(user_id, ROLE_SUPERVISOR, supervisor['company_id'])
    if await db_queries.is_driver(user_id):
        return Actor(user_id, ROLE_DRIVER)
    return None


class IdentityMiddleware(BaseMiddleware):
    """
    Resolves who is acting and passes it to filters and handlers as `actor`
    (None for unregistered users). The core trusts this value as is.
    """
    async def __call__(
        self,
        handler: Callable[[TelegramObject, Dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: Dict[str, Any]
    ) -> Any:
        user = data.get('event_from_user')
        actor = await resolve_actor(user.id) if user else None
        data['actor'] = actor
        with logger.contextualize(role=actor.role if actor else "guest"):
            return await handler(event, data)
