import aiosqlite
import functools
from config.config import DB_PATH, TIMEZONE
from datetime import datetime
from loguru import logger

from dispatch.exceptions import StoreError
from states.fsm_states import (
    RequestStatus, VehicleStatus, VehicleType, Presence, Role,
    RELEASING_VEHICLE_STATUSES, VISIBLE_VEHICLE_STATUSES, CANCELLABLE_REQUEST_STATUSES,
)

# --- Вспомогательные функции ---
def _get_db():
    """Возвращает асинхронное подключение к базе данных."""
    return aiosqlite.connect(DB_PATH)

def _now() -> str:
    return datetime.now(TIMEZONE).isoformat()

def _value(status) -> str:
    return status.value if hasattr(status, 'value') else status

def _store_operation(func):
    """Переводит ошибки aiosqlite в StoreError, чтобы вызывающий код не зависел от драйвера."""
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except aiosqlite.Error as e:
            logger.error(f"Store operation '{func.__name__}' failed: {e}")
            raise StoreError() from e
    return wrapper

def _account_from_row(row: aiosqlite.Row | None) -> dict | None:
    if row is None:
        return None
    return {
        'id': row['id'],
        'name': row['name'],
        'email': row['email'],
        'number': row['phone_number'],
        'role': row['role'],
        'status': row['status'],
        'lastLogin': row['last_login'],
        'createdAt': row['created_at'],
    }

def _vehicle_from_row(row: aiosqlite.Row | None) -> dict | None:
    if row is None:
        return None
    return {
        'id': row['id'],
        'accountId': row['account_id'],
        'vehicleId': row['vehicle_id'],
        'vehicleType': row['vehicle_type'],
        'currentLocation': {
            'latitude': row['latitude'],
            'longitude': row['longitude'],
            'lastUpdated': row['last_location_update'],
        },
        'status': row['status'],
        'discount': bool(row['discount']),
    }

def _request_from_row(row: aiosqlite.Row | None) -> dict | None:
    if row is None:
        return None
    return {
        'id': row['id'],
        'requesterId': row['requester_id'],
        'location': {
            'latitude': row['latitude'],
            'longitude': row['longitude'],
            'address': row['address'],
        },
        'vehicleId': row['vehicle_id'],
        'status': row['status'],
        'emergencyDetails': row['emergency_details'],
        'patientCount': row['patient_count'],
        'criticalLevel': row['critical_level'],
        'createdAt': row['created_at'],
        'completedAt': row['completed_at'],
    }

async def _fetch_vehicle(db: aiosqlite.Connection, vehicle_id: str) -> dict | None:
    db.row_factory = aiosqlite.Row
    cursor = await db.execute("SELECT * FROM vehicles WHERE vehicle_id = ?", (vehicle_id,))
    return _vehicle_from_row(await cursor.fetchone())

async def _fetch_request(db: aiosqlite.Connection, request_id: int) -> dict | None:
    db.row_factory = aiosqlite.Row
    cursor = await db.execute("SELECT * FROM requests WHERE id = ?", (request_id,))
    return _request_from_row(await cursor.fetchone())

# --- Аккаунты ---

@_store_operation
async def create_account(name: str, email: str, password_hash: str, role: str = Role.REQUESTER,
                         phone_number: str | None = None) -> dict:
    """Создает новый аккаунт и возвращает его запись."""
    async with _get_db() as db:
        cursor = await db.execute(
            """
            INSERT INTO accounts (name, email, phone_number, password_hash, role, status, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (name, email, phone_number, password_hash, _value(role), Presence.OFFLINE.value, _now())
        )
        await db.commit()
        db.row_factory = aiosqlite.Row
        cursor = await db.execute("SELECT * FROM accounts WHERE id = ?", (cursor.lastrowid,))
        return _account_from_row(await cursor.fetchone())

@_store_operation
async def get_account(account_id: int) -> dict | None:
    """Получает аккаунт по ID."""
    async with _get_db() as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute("SELECT * FROM accounts WHERE id = ?", (account_id,))
        return _account_from_row(await cursor.fetchone())

@_store_operation
async def set_account_presence(account_id: int, status: str) -> dict | None:
    """Обновляет статус присутствия аккаунта (online/offline/busy)."""
    async with _get_db() as db:
        cursor = await db.execute("UPDATE accounts SET status = ? WHERE id = ?", (_value(status), account_id))
        await db.commit()
        if cursor.rowcount == 0:
            return None
        db.row_factory = aiosqlite.Row
        cursor = await db.execute("SELECT * FROM accounts WHERE id = ?", (account_id,))
        return _account_from_row(await cursor.fetchone())

@_store_operation
async def touch_last_login(account_id: int):
    """Обновляет временную метку последней аутентификации."""
    async with _get_db() as db:
        await db.execute("UPDATE accounts SET last_login = ? WHERE id = ?", (_now(), account_id))
        await db.commit()

# --- Машины скорой помощи ---

@_store_operation
async def create_vehicle(account_id: int, vehicle_id: str, vehicle_type: str = 'basic') -> dict:
    """Регистрирует машину для аккаунта водителя. Новая машина всегда offline."""
    async with _get_db() as db:
        await db.execute(
            "INSERT INTO vehicles (account_id, vehicle_id, vehicle_type, status, discount) VALUES (?, ?, ?, ?, 0)",
            (account_id, vehicle_id, VehicleType(_value(vehicle_type)).value, VehicleStatus.OFFLINE.value)
        )
        await db.commit()
        return await _fetch_vehicle(db, vehicle_id)

async def register_driver(name: str, email: str, password_hash: str, vehicle_id: str,
                          vehicle_type: str = 'basic', phone_number: str | None = None) -> tuple[dict, dict]:
    """Создает аккаунт водителя вместе с его машиной."""
    account = await create_account(name, email, password_hash, Role.DRIVER, phone_number)
    vehicle = await create_vehicle(account['id'], vehicle_id, vehicle_type)
    return account, vehicle

@_store_operation
async def get_vehicle(vehicle_id: str) -> dict | None:
    """Получает машину по ее стабильному идентификатору."""
    async with _get_db() as db:
        return await _fetch_vehicle(db, vehicle_id)

@_store_operation
async def get_vehicle_by_account(account_id: int) -> dict | None:
    """Получает машину, закрепленную за аккаунтом водителя."""
    async with _get_db() as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute("SELECT * FROM vehicles WHERE account_id = ?", (account_id,))
        return _vehicle_from_row(await cursor.fetchone())

@_store_operation
async def update_vehicle_status(vehicle_id: str, status: str) -> dict | None:
    """
    Обновляет рабочий статус машины.
    Переход в offline/at_hospital также сбрасывает флаг discount.
    """
    status = VehicleStatus(status)
    async with _get_db() as db:
        if status in RELEASING_VEHICLE_STATUSES:
            cursor = await db.execute(
                "UPDATE vehicles SET status = ?, discount = 0 WHERE vehicle_id = ?",
                (status.value, vehicle_id)
            )
        else:
            cursor = await db.execute("UPDATE vehicles SET status = ? WHERE vehicle_id = ?", (status.value, vehicle_id))
        await db.commit()
        if cursor.rowcount == 0:
            return None
        return await _fetch_vehicle(db, vehicle_id)

@_store_operation
async def set_vehicle_discount(vehicle_id: str, discount: bool) -> dict | None:
    """Устанавливает флаг discount машины."""
    async with _get_db() as db:
        cursor = await db.execute(
            "UPDATE vehicles SET discount = ? WHERE vehicle_id = ?", (1 if discount else 0, vehicle_id)
        )
        await db.commit()
        if cursor.rowcount == 0:
            return None
        return await _fetch_vehicle(db, vehicle_id)

@_store_operation
async def update_vehicle_location(vehicle_id: str, lat: float, lon: float) -> dict | None:
    """Обновляет геолокацию машины."""
    async with _get_db() as db:
        cursor = await db.execute(
            "UPDATE vehicles SET latitude = ?, longitude = ?, last_location_update = ? WHERE vehicle_id = ?",
            (lat, lon, _now(), vehicle_id)
        )
        await db.commit()
        if cursor.rowcount == 0:
            return None
        return await _fetch_vehicle(db, vehicle_id)

@_store_operation
async def get_active_vehicles() -> list[dict]:
    """Получает машины на линии с известной геолокацией."""
    statuses = [s.value for s in VISIBLE_VEHICLE_STATUSES]
    async with _get_db() as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            f"""
            SELECT * FROM vehicles
            WHERE status IN ({','.join('?' for _ in statuses)})
              AND latitude IS NOT NULL AND longitude IS NOT NULL
            ORDER BY vehicle_id
            """,
            statuses
        )
        return [_vehicle_from_row(row) for row in await cursor.fetchall()]

# --- Экстренные вызовы ---

@_store_operation
async def create_request(requester_id: int, latitude: float, longitude: float, address: str | None,
                         emergency_details: str | None, patient_count: int, critical_level: str) -> dict:
    """Создает новый вызов в статусе pending и возвращает его запись."""
    async with _get_db() as db:
        cursor = await db.execute(
            """
            INSERT INTO requests (
                requester_id, latitude, longitude, address, status,
                emergency_details, patient_count, critical_level, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                requester_id, latitude, longitude, address, RequestStatus.PENDING.value,
                emergency_details, patient_count, _value(critical_level), _now()
            )
        )
        await db.commit()
        return await _fetch_request(db, cursor.lastrowid)

@_store_operation
async def get_request(request_id: int) -> dict | None:
    """Получает вызов по ID."""
    async with _get_db() as db:
        return await _fetch_request(db, request_id)

@_store_operation
async def get_requests_by_status(statuses: list[str]) -> list[dict]:
    """Получает вызовы с одним из указанных статусов, старые первыми."""
    values = [_value(s) for s in statuses]
    async with _get_db() as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            f"SELECT * FROM requests WHERE status IN ({','.join('?' for _ in values)}) ORDER BY created_at, id",
            values
        )
        return [_request_from_row(row) for row in await cursor.fetchall()]

@_store_operation
async def accept_request(request_id: int, vehicle_id: str) -> dict | None:
    """Принятие вызова машиной. Срабатывает только пока вызов в статусе pending."""
    async with _get_db() as db:
        cursor = await db.execute(
            "UPDATE requests SET vehicle_id = ?, status = ? WHERE id = ? AND status = ?",
            (vehicle_id, RequestStatus.ACCEPTED.value, request_id, RequestStatus.PENDING.value)
        )
        await db.commit()
        if cursor.rowcount == 0:
            return None
        return await _fetch_request(db, request_id)

@_store_operation
async def update_request_status(request_id: int, status: str) -> dict | None:
    """
    Обновляет статус вызова.
    completed проставляет completed_at; pending/cancelled снимают назначенную машину.
    """
    status = _value(status)
    async with _get_db() as db:
        if status == RequestStatus.COMPLETED.value:
            cursor = await db.execute(
                "UPDATE requests SET status = ?, completed_at = ? WHERE id = ?", (status, _now(), request_id)
            )
        elif status in (RequestStatus.PENDING.value, RequestStatus.CANCELLED.value):
            cursor = await db.execute(
                "UPDATE requests SET status = ?, vehicle_id = NULL WHERE id = ?", (status, request_id)
            )
        else:
            cursor = await db.execute("UPDATE requests SET status = ? WHERE id = ?", (status, request_id))
        await db.commit()
        if cursor.rowcount == 0:
            return None
        return await _fetch_request(db, request_id)

@_store_operation
async def cancel_request(request_id: int, expected_status=None) -> dict | None:
    """
    Отменяет вызов, если он еще pending или accepted. Возвращает None, если отмена невозможна.
    С expected_status отмена срабатывает только если статус в базе не изменился.
    """
    statuses = [s.value for s in CANCELLABLE_REQUEST_STATUSES]
    if expected_status is not None:
        statuses = [s for s in statuses if s == _value(expected_status)]
        if not statuses:
            return None
    async with _get_db() as db:
        cursor = await db.execute(
            f"""
            UPDATE requests SET status = ?, vehicle_id = NULL
            WHERE id = ? AND status IN ({','.join('?' for _ in statuses)})
            """,
            (RequestStatus.CANCELLED.value, request_id, *statuses)
        )
        await db.commit()
        if cursor.rowcount == 0:
            return None
        return await _fetch_request(db, request_id)

@_store_operation
async def get_active_request_for_vehicle(vehicle_id: str) -> dict | None:
    """Получает вызов, который машина обслуживает сейчас (accepted или in_progress)."""
    async with _get_db() as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            """
            SELECT * FROM requests
            WHERE vehicle_id = ? AND status IN (?, ?)
            ORDER BY created_at DESC, id DESC LIMIT 1
            """,
            (vehicle_id, RequestStatus.ACCEPTED.value, RequestStatus.IN_PROGRESS.value)
        )
        return _request_from_row(await cursor.fetchone())
