from aiogram import types

PHONE_RECEIVER = "_phone"

def cancel_inline_button() -> types.InlineKeyboardButton:
    return types.InlineKeyboardButton(text="🚫 Скасувати", callback_data="stop_fsm")
