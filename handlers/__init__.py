# This file makes the 'handlers' directory a Python package.
from aiogram import Router


def setup_routers():
    """
    Creates and configures all routers for the application.
    This function imports and initializes routers locally to ensure they are clean for each call,
    which is crucial for isolated testing.

    Возвращает три роутера:
    1. main_router: /start, deep links, сбор и передачи.
    2. admin_router: регистрация водителей, контейнеров и заводов.
    3. error_router: для обработки ошибок.
    """
    # Local imports to avoid global state issues during testing
    from . import admin, collection, error_handler, handoffs, start

    main_router = Router()
    main_router.include_routers(
        # 1. Commands, deep links and FSM cancel have the highest priority.
        start.router,
        # 2. Handoffs before the collection flow: the "handoff" button and its FSM states.
        handoffs.router,
        collection.router,
    )
    return main_router, admin.router, error_handler.router
