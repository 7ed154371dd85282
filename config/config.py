import os
from dotenv import load_dotenv
from zoneinfo import ZoneInfo
from pathlib import Path

load_dotenv()

# --- Base Directory ---
BASE_DIR = Path(__file__).resolve().parent.parent

# --- Telegram Bot ---
# Перевіряється в main.py при старті бота, щоб ядро імпортувалось і без токена
TOKEN = os.getenv('TELEGRAM_TOKEN')

ADMIN_IDS_STR = os.getenv('ADMIN_IDS', '')
ADMIN_IDS = [int(admin_id.strip()) for admin_id in ADMIN_IDS_STR.split(',') if admin_id.strip()]

# --- Database ---
DB_PATH = Path(os.getenv('DB_PATH', BASE_DIR / 'database' / 'medwaste.db'))

# Часовий пояс лише для відображення; у базі все зберігається в UTC
TIMEZONE = ZoneInfo(os.getenv('TIMEZONE', 'Asia/Almaty'))

# --- Collection sessions ---
# Мінімальний інтервал між прийнятими GPS-точками однієї сесії
LOCATION_MIN_INTERVAL_SECONDS = float(os.getenv('LOCATION_MIN_INTERVAL_SECONDS', 10))
# Радіус автоматичної позначки контейнера як відвіданого; 0 вимикає
VISIT_PROXIMITY_METERS = float(os.getenv('VISIT_PROXIMITY_METERS', 50))
# Сесія без нових точок довше цього часу потрапляє в сповіщення адміністраторам
SESSION_INACTIVITY_MINUTES = int(os.getenv('SESSION_INACTIVITY_MINUTES', 30))
INACTIVITY_CHECK_SECONDS = int(os.getenv('INACTIVITY_CHECK_SECONDS', 300))

# --- Handoffs ---
HANDOFF_TOKEN_TTL_HOURS = int(os.getenv('HANDOFF_TOKEN_TTL_HOURS', 24))
PUBLIC_CONFIRM_BASE_URL = os.getenv('PUBLIC_CONFIRM_BASE_URL', 'https://medicalwaste.kz/confirm')


def require_bot_settings():
    """Validates the settings that only the running bot needs."""
    if not TOKEN:
        raise ValueError("Необхідно встановити TELEGRAM_TOKEN в .env файлі")
    if not ADMIN_IDS:
        raise ValueError("Необхідно встановити ADMIN_IDS в .env файлі")
