from aiogram import types
from aiogram.utils.keyboard import InlineKeyboardBuilder

from collection.models import Handoff, HandoffStatus, PlantRecord, Session
from utils.callback_factories import HandoffAction, MarkVisited, PlantChoice, SummaryRefresh
from .common import PHONE_RECEIVER, cancel_inline_button


def get_checklist_keyboard(session: Session) -> types.InlineKeyboardMarkup:
    """One button per selected container; visited ones are ticked and stay clickable (idempotent)."""
    builder = InlineKeyboardBuilder()
    for item in session.selected_containers:
        mark = "✅" if item.visited else "⬜️"
        builder.button(text=f"{mark} {item.container_ref}", callback_data=MarkVisited(ref=item.container_ref))
    builder.button(text="🔄 Оновити", callback_data=SummaryRefresh(action='refresh'))
    builder.adjust(*([2] * (len(session.selected_containers) // 2)), 1, 1)
    return builder.as_markup()


def get_summary_keyboard() -> types.InlineKeyboardMarkup:
    builder = InlineKeyboardBuilder()
    builder.button(text="🔄 Оновити", callback_data=SummaryRefresh(action='refresh'))
    builder.button(text="🗺 Маршрут", callback_data=SummaryRefresh(action='route'))
    builder.adjust(2)
    return builder.as_markup()


def get_plant_choice_keyboard(plants: list[PlantRecord]) -> types.InlineKeyboardMarkup:
    builder = InlineKeyboardBuilder()
    for plant in plants:
        builder.button(text=f"🏭 {plant.name}", callback_data=PlantChoice(plant_id=plant.plant_id))
    builder.button(text="📞 Інший отримувач (телефон)", callback_data=PlantChoice(plant_id=PHONE_RECEIVER))
    builder.add(cancel_inline_button())
    builder.adjust(1)
    return builder.as_markup()


def get_handoff_actions_keyboard(handoff: Handoff, confirm_url: str | None = None) -> types.InlineKeyboardMarkup | None:
    """Sender-side actions: confirm/reject while pending, the receiver's link and a new link while open."""
    builder = InlineKeyboardBuilder()
    if handoff.status == HandoffStatus.PENDING:
        builder.button(text="✅ Підтвердити відправку",
                       callback_data=HandoffAction(action='confirm', handoff_id=handoff.handoff_id))
        builder.button(text="❌ Відхилити",
                       callback_data=HandoffAction(action='reject', handoff_id=handoff.handoff_id))
    if confirm_url:
        builder.button(text="🔗 Посилання для отримувача", url=confirm_url)
    if not handoff.is_terminal:
        builder.button(text="🔁 Нове посилання",
                       callback_data=HandoffAction(action='reissue', handoff_id=handoff.handoff_id))
    if not list(builder.buttons):
        return None
    builder.adjust(1)
    return builder.as_markup()
