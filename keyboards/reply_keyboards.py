from aiogram import types

START_COLLECTION_TEXT = '🚛 Почати збір'
MY_COLLECTION_TEXT = '📋 Мій збір'
STOP_COLLECTION_TEXT = '🏁 Завершити збір'
HANDOFF_TEXT = '🔥 Передати на утилізацію'
SKIP_TEXT = '➡️ Пропустити'
CANCEL_TEXT = '🚫 Скасувати'

# --- Driver Menu ---
driver_menu_kb = [
    [types.KeyboardButton(text=START_COLLECTION_TEXT), types.KeyboardButton(text=MY_COLLECTION_TEXT)],
    [types.KeyboardButton(text=STOP_COLLECTION_TEXT)],
    [types.KeyboardButton(text=HANDOFF_TEXT)],
]
driver_menu_keyboard = types.ReplyKeyboardMarkup(keyboard=driver_menu_kb, resize_keyboard=True)

# --- FSM ---
location_or_skip_kb = [
    [types.KeyboardButton(text='📍 Надіслати геолокацію', request_location=True)],
    [types.KeyboardButton(text=SKIP_TEXT)],
    [types.KeyboardButton(text=CANCEL_TEXT)]
]
location_or_skip_keyboard = types.ReplyKeyboardMarkup(keyboard=location_or_skip_kb, resize_keyboard=True, one_time_keyboard=True)

fsm_cancel_kb = [
    [types.KeyboardButton(text=CANCEL_TEXT)]
]
fsm_cancel_keyboard = types.ReplyKeyboardMarkup(keyboard=fsm_cancel_kb, resize_keyboard=True)
