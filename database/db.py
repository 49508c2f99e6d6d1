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
        try:
            await cursor.execute(f"ALTER TABLE {table_name} ADD COLUMN {column_name} {column_type};")
            logger.info(f"✅ Column '{column_name}' added successfully.")
        except aiosqlite.Error as e:
            logger.error(f"Failed to add column '{column_name}': {e}")
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
            cursor = await db.cursor()

            # --- Table Creation Script ---
            # This script will only create tables that do not already exist.
            create_tables_script = """
                CREATE TABLE IF NOT EXISTS accounts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    email TEXT UNIQUE NOT NULL,
                    phone_number TEXT UNIQUE,
                    password_hash TEXT NOT NULL,
                    role TEXT NOT NULL DEFAULT 'requester',
                    status TEXT NOT NULL DEFAULT 'offline',
                    last_login TIMESTAMP,
                    created_at TIMESTAMP
                );

                CREATE TABLE IF NOT EXISTS vehicles (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id INTEGER NOT NULL,
                    vehicle_id TEXT UNIQUE NOT NULL,
                    vehicle_type TEXT NOT NULL DEFAULT 'basic',
                    latitude REAL,
                    longitude REAL,
                    last_location_update TIMESTAMP,
                    status TEXT NOT NULL DEFAULT 'offline',
                    FOREIGN KEY(account_id) REFERENCES accounts(id)
                );

                CREATE TABLE IF NOT EXISTS requests (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    requester_id INTEGER NOT NULL,
                    latitude REAL NOT NULL,
                    longitude REAL NOT NULL,
                    address TEXT,
                    vehicle_id TEXT,
                    status TEXT NOT NULL DEFAULT 'pending',
                    emergency_details TEXT,
                    patient_count INTEGER NOT NULL DEFAULT 1,
                    critical_level TEXT NOT NULL DEFAULT 'medium',
                    created_at TIMESTAMP,
                    completed_at TIMESTAMP,
                    FOREIGN KEY(requester_id) REFERENCES accounts(id)
                );
            """
            await _execute_script(cursor, create_tables_script)

            # --- Schema Migrations ---
            # New columns are added to existing tables if they are missing.
            logger.info("Checking for necessary database migrations...")
            await _check_and_add_column(cursor, 'vehicles', 'discount', 'INTEGER DEFAULT 0')

            await db.commit()
            logger.info("Database initialization and migration check complete.")

            # --- Index Creation ---
            logger.info("Створення/перевірка індексів...")
            index_script = """
                CREATE INDEX IF NOT EXISTS idx_requests_status ON requests(status);
                CREATE INDEX IF NOT EXISTS idx_requests_vehicle_id ON requests(vehicle_id);
                CREATE INDEX IF NOT EXISTS idx_requests_requester_id ON requests(requester_id);
                CREATE INDEX IF NOT EXISTS idx_vehicles_status ON vehicles(status);
                CREATE INDEX IF NOT EXISTS idx_vehicles_account_id ON vehicles(account_id);
            """
            await _execute_script(cursor, index_script)
            await db.commit()
            logger.info("Індекси успішно створені/перевірені.")

    except aiosqlite.Error as e:
        logger.critical(f"Critical database initialization error: {e}")
        raise

if __name__ == '__main__':
    asyncio.run(init_db())
