import aiosqlite
import asyncio
from config.config import DB_PATH
from loguru import logger

async def _execute_script(cursor, script):
    """Executes a multi-statement SQL script."""
    try:
        await cursor.executescript(script)
    except aiosqlite.Error as e:
        logger.error(f"Error executing script: {e}")
        raise

async def _check_and_add_column(cursor, table_name, column_name, column_type):
    """Checks if a column exists in a table and adds it if it doesn't."""
    await cursor.execute(f"PRAGMA table_info({table_name});")
    columns = [info[1] for info in await cursor.fetchall()]
    if column_name not in columns:
        logger.info(f"Column '{column_name}' not found in table '{table_name}'. Adding it...")
        await cursor.execute(f"ALTER TABLE {table_name} ADD COLUMN {column_name} {column_type};")
        logger.info(f"Column '{column_name}' added to '{table_name}'.")
    else:
        logger.trace(f"Column '{column_name}' already exists in '{table_name}'.")


async def init_db(db_path=None):
    """
    Initializes the database: creates tables if they don't exist
    and runs necessary schema migrations.
    """
    db_path = db_path or DB_PATH
    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL;")
            cursor = await db.cursor()

            create_tables_script = """
                CREATE TABLE IF NOT EXISTS drivers (
                    user_id INTEGER PRIMARY KEY,
                    full_name TEXT,
                    phone_num TEXT,
                    company_id TEXT,
                    created_at TEXT
                );

                CREATE TABLE IF NOT EXISTS supervisors (
                    user_id INTEGER PRIMARY KEY,
                    full_name TEXT,
                    company_id TEXT,
                    created_at TEXT
                );

                CREATE TABLE IF NOT EXISTS containers (
                    container_ref TEXT PRIMARY KEY,
                    company_id TEXT,
                    waste_type TEXT,
                    latitude REAL,
                    longitude REAL,
                    is_active INTEGER DEFAULT 1
                );

                CREATE TABLE IF NOT EXISTS incineration_plants (
                    plant_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    operator_name TEXT,
                    operator_phone TEXT,
                    is_active INTEGER DEFAULT 1
                );

                CREATE TABLE IF NOT EXISTS collection_sessions (
                    session_id TEXT PRIMARY KEY,
                    driver_id INTEGER NOT NULL,
                    company_id TEXT,
                    status TEXT NOT NULL,
                    start_time TEXT NOT NULL,
                    end_time TEXT,
                    start_lat REAL,
                    start_lon REAL,
                    end_lat REAL,
                    end_lon REAL,
                    handoff_stage TEXT NOT NULL DEFAULT 'none',
                    chain_id TEXT,
                    last_fix_at TEXT,
                    route_points_count INTEGER NOT NULL DEFAULT 0,
                    containers_collected INTEGER DEFAULT 0,
                    total_weight_collected REAL DEFAULT 0,
                    total_duration_minutes INTEGER DEFAULT 0,
                    version INTEGER NOT NULL DEFAULT 1,
                    updated_at TEXT
                );

                CREATE TABLE IF NOT EXISTS session_containers (
                    session_id TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    container_ref TEXT NOT NULL,
                    visited INTEGER NOT NULL DEFAULT 0,
                    visited_at TEXT,
                    collected_weight REAL,
                    PRIMARY KEY (session_id, container_ref),
                    FOREIGN KEY(session_id) REFERENCES collection_sessions(session_id)
                );

                CREATE TABLE IF NOT EXISTS route_points (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT NOT NULL,
                    seq INTEGER NOT NULL,
                    latitude REAL NOT NULL,
                    longitude REAL NOT NULL,
                    accuracy REAL NOT NULL DEFAULT 0,
                    speed REAL,
                    altitude REAL,
                    altitude_accuracy REAL,
                    heading REAL,
                    device_time TEXT,
                    received_at TEXT NOT NULL,
                    UNIQUE(session_id, seq),
                    FOREIGN KEY(session_id) REFERENCES collection_sessions(session_id)
                );

                CREATE TABLE IF NOT EXISTS handoffs (
                    handoff_id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    chain_id TEXT,
                    type TEXT NOT NULL,
                    sequence INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    sender_id INTEGER,
                    receiver_kind TEXT NOT NULL,
                    receiver_plant_id TEXT,
                    receiver_phone TEXT,
                    receiver_name TEXT,
                    receiver_driver_id INTEGER,
                    total_containers INTEGER NOT NULL DEFAULT 0,
                    total_declared_weight REAL NOT NULL DEFAULT 0,
                    token_hash TEXT UNIQUE,
                    token_expires_at TEXT,
                    token_consumed_at TEXT,
                    sender_confirmed_at TEXT,
                    completed_at TEXT,
                    rejected_at TEXT,
                    rejection_reason TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT,
                    version INTEGER NOT NULL DEFAULT 1,
                    UNIQUE(session_id, type),
                    FOREIGN KEY(session_id) REFERENCES collection_sessions(session_id)
                );

                CREATE TABLE IF NOT EXISTS handoff_containers (
                    handoff_id TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    container_ref TEXT NOT NULL,
                    declared_weight REAL,
                    PRIMARY KEY (handoff_id, container_ref),
                    FOREIGN KEY(handoff_id) REFERENCES handoffs(handoff_id)
                );

                CREATE TABLE IF NOT EXISTS custody_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT NOT NULL,
                    handoff_id TEXT,
                    event_type TEXT NOT NULL,
                    payload_json TEXT NOT NULL,
                    occurred_at TEXT NOT NULL,
                    prev_hash TEXT NOT NULL,
                    event_hash TEXT NOT NULL
                );
            """
            await _execute_script(cursor, create_tables_script)

            # --- Schema Migrations ---
            logger.info("Checking for necessary database migrations...")
            await _check_and_add_column(cursor, 'collection_sessions', 'total_duration_minutes', 'INTEGER DEFAULT 0')
            await _check_and_add_column(cursor, 'drivers', 'company_id', 'TEXT')
            await db.commit()

            # --- Index Creation ---
            logger.info("Створення/перевірка індексів...")
            index_script = """
                CREATE UNIQUE INDEX IF NOT EXISTS ux_sessions_one_active_per_driver
                    ON collection_sessions(driver_id) WHERE status = 'active';
                CREATE INDEX IF NOT EXISTS idx_sessions_driver_start ON collection_sessions(driver_id, start_time);
                CREATE INDEX IF NOT EXISTS idx_sessions_status ON collection_sessions(status);
                CREATE INDEX IF NOT EXISTS idx_route_points_session ON route_points(session_id, seq);
                CREATE INDEX IF NOT EXISTS idx_handoffs_session ON handoffs(session_id);
                CREATE INDEX IF NOT EXISTS idx_custody_events_session ON custody_events(session_id, id);
            """
            await _execute_script(cursor, index_script)
            await db.commit()
            logger.info("Database initialization and migration check complete.")

    except aiosqlite.Error as e:
        logger.critical(f"Critical database initialization error: {e}")
        raise

if __name__ == '__main__':
    asyncio.run(init_db())
