import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterator, List, Optional, Set
from uuid import uuid4

from app.models import AccountProfile, Booking, LocationSample, ProviderProfile, Review
from app.services.errors import ConflictError, NotFoundError, TransientIOError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_ADMIN_USERS = {"admin_1"}

ACCOUNT_FIELDS = {"first_name", "last_name", "avatar_url", "is_admin", "is_provider", "provider_status"}
PROVIDER_PROFILE_FIELDS = {
    "name",
    "description",
    "specialties",
    "experience_years",
    "base_price",
    "availability",
    "location",
    "avatar_url",
    "approval_status",
    "rating",
}
BOOKING_MUTABLE_FIELDS = {"status", "journey_started", "estimated_arrival", "payment_reference", "notes"}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_iso_datetime(value: str, *, field: str = "timestamp") -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    raw = (value or "").strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError as exc:
        raise ValidationError(f"Invalid {field}: expected ISO-8601 timestamp") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_specialties(values: List[str]) -> List[str]:
    seen: Set[str] = set()
    ordered: List[str] = []
    for value in values:
        cleaned = value.strip()
        if cleaned and cleaned.lower() not in seen:
            seen.add(cleaned.lower())
            ordered.append(cleaned)
    return ordered


@dataclass
class SevaStore:
    """Authoritative sqlite store for accounts, provider profiles, bookings and location samples."""

    db_path: str

    def __post_init__(self) -> None:
        self._lock = Lock()
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        configured_admins = {value.strip() for value in os.getenv("ADMIN_USER_IDS", "").split(",") if value.strip()}
        self._admin_user_ids: Set[str] = configured_admins or set(DEFAULT_ADMIN_USERS)
        self._init_db()
        self._seed_if_needed()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                conn = self._connect()
            except sqlite3.OperationalError as exc:
                raise TransientIOError(f"Store unavailable: {exc}") from exc
            try:
                with conn:
                    yield conn
            except sqlite3.OperationalError as exc:
                raise TransientIOError(f"Store operation failed: {exc}") from exc
            finally:
                conn.close()

    def _init_db(self) -> None:
        with self._session() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS account_profiles (
                    id TEXT PRIMARY KEY,
                    first_name TEXT,
                    last_name TEXT,
                    avatar_url TEXT,
                    is_admin INTEGER NOT NULL DEFAULT 0,
                    is_provider INTEGER NOT NULL DEFAULT 0,
                    provider_status TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS provider_profiles (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL UNIQUE,
                    name TEXT NOT NULL,
                    description TEXT NOT NULL,
                    specialties_json TEXT NOT NULL DEFAULT '[]',
                    experience_years INTEGER NOT NULL DEFAULT 1,
                    base_price REAL NOT NULL DEFAULT 100,
                    availability TEXT NOT NULL DEFAULT 'Available for booking',
                    location TEXT NOT NULL DEFAULT 'Temple',
                    avatar_url TEXT NOT NULL DEFAULT '/placeholder.svg',
                    approval_status TEXT NOT NULL DEFAULT 'pending',
                    rating REAL NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS bookings (
                    id TEXT PRIMARY KEY,
                    requester_id TEXT NOT NULL,
                    provider_id TEXT NOT NULL,
                    scheduled_at TEXT NOT NULL,
                    purpose TEXT NOT NULL,
                    address TEXT NOT NULL,
                    notes TEXT,
                    price REAL NOT NULL DEFAULT 0,
                    status TEXT NOT NULL,
                    journey_started INTEGER NOT NULL DEFAULT 0,
                    estimated_arrival TEXT,
                    version INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS location_samples (
                    booking_id TEXT PRIMARY KEY,
                    provider_id TEXT NOT NULL,
                    latitude REAL NOT NULL,
                    longitude REAL NOT NULL,
                    speed REAL,
                    heading REAL,
                    accuracy REAL,
                    captured_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS reviews (
                    id TEXT PRIMARY KEY,
                    booking_id TEXT NOT NULL UNIQUE,
                    provider_id TEXT NOT NULL,
                    reviewer_id TEXT NOT NULL,
                    rating INTEGER NOT NULL,
                    comment TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            self._ensure_column(conn, "bookings", "payment_reference", "TEXT")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_bookings_requester ON bookings (requester_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_bookings_provider ON bookings (provider_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_reviews_provider ON reviews (provider_id)")

    def _ensure_column(self, conn: sqlite3.Connection, table: str, column: str, definition: str) -> None:
        columns = conn.execute(f"PRAGMA table_info({table})").fetchall()
        existing = {row["name"] for row in columns}
        if column in existing:
            return
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")

    def _seed_if_needed(self) -> None:
        now = utc_now_iso()
        with self._session() as conn:
            for user_id in sorted(self._admin_user_ids):
                conn.execute(
                    """
                    INSERT INTO account_profiles (id, is_admin, created_at, updated_at)
                    VALUES (?, 1, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET is_admin = 1
                    """,
                    (user_id, now, now),
                )
        logger.info("Admin accounts ensured: %s", ", ".join(sorted(self._admin_user_ids)))

    # Account profiles

    def _row_to_account(self, row: sqlite3.Row) -> AccountProfile:
        return AccountProfile(
            id=row["id"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            avatar_url=row["avatar_url"],
            is_admin=bool(row["is_admin"]),
            is_provider=bool(row["is_provider"]),
            provider_status=row["provider_status"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def get_account(self, user_id: str) -> Optional[AccountProfile]:
        with self._session() as conn:
            row = conn.execute("SELECT * FROM account_profiles WHERE id = ?", (user_id,)).fetchone()
        return self._row_to_account(row) if row else None

    def ensure_account(
        self,
        user_id: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> AccountProfile:
        if not user_id.strip():
            raise ValidationError("user_id is required")
        now = utc_now_iso()
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO account_profiles (id, first_name, last_name, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    first_name = COALESCE(excluded.first_name, account_profiles.first_name),
                    last_name = COALESCE(excluded.last_name, account_profiles.last_name)
                """,
                (user_id, first_name, last_name, now, now),
            )
            row = conn.execute("SELECT * FROM account_profiles WHERE id = ?", (user_id,)).fetchone()
        return self._row_to_account(row)

    def list_accounts(self) -> List[AccountProfile]:
        with self._session() as conn:
            rows = conn.execute("SELECT * FROM account_profiles ORDER BY created_at DESC, id").fetchall()
        return [self._row_to_account(row) for row in rows]

    def update_account(self, user_id: str, **fields: Any) -> AccountProfile:
        unknown = set(fields) - ACCOUNT_FIELDS
        if unknown:
            raise ValidationError(f"Unknown account fields: {', '.join(sorted(unknown))}")
        values: Dict[str, Any] = {}
        for key, value in fields.items():
            values[key] = int(value) if key in {"is_admin", "is_provider"} else value
        values["updated_at"] = utc_now_iso()
        assignments = ", ".join(f"{key} = ?" for key in values)
        with self._session() as conn:
            cursor = conn.execute(
                f"UPDATE account_profiles SET {assignments} WHERE id = ?",
                (*values.values(), user_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("User not found")
            row = conn.execute("SELECT * FROM account_profiles WHERE id = ?", (user_id,)).fetchone()
        return self._row_to_account(row)

    # Provider profiles

    def _row_to_provider_profile(self, row: sqlite3.Row) -> ProviderProfile:
        return ProviderProfile(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            description=row["description"],
            specialties=json.loads(row["specialties_json"] or "[]"),
            experience_years=int(row["experience_years"]),
            base_price=float(row["base_price"]),
            availability=row["availability"],
            location=row["location"],
            avatar_url=row["avatar_url"],
            approval_status=row["approval_status"],
            rating=float(row["rating"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def get_provider_profile(self, profile_id: str) -> Optional[ProviderProfile]:
        with self._session() as conn:
            row = conn.execute("SELECT * FROM provider_profiles WHERE id = ?", (profile_id,)).fetchone()
        return self._row_to_provider_profile(row) if row else None

    def get_provider_profile_for_user(self, user_id: str) -> Optional[ProviderProfile]:
        with self._session() as conn:
            row = conn.execute("SELECT * FROM provider_profiles WHERE user_id = ?", (user_id,)).fetchone()
        return self._row_to_provider_profile(row) if row else None

    def list_provider_profiles(self, *, listed_only: bool = True) -> List[ProviderProfile]:
        """Provider profiles; listed_only keeps approved profiles whose owner still holds access."""
        query = "SELECT p.* FROM provider_profiles p"
        if listed_only:
            query += (
                " JOIN account_profiles a ON a.id = p.user_id"
                " WHERE p.approval_status = 'approved' AND a.is_provider = 1"
            )
        query += " ORDER BY p.rating DESC, p.name"
        with self._session() as conn:
            rows = conn.execute(query).fetchall()
        return [self._row_to_provider_profile(row) for row in rows]

    def create_provider_profile(self, user_id: str, **fields: Any) -> ProviderProfile:
        unknown = set(fields) - PROVIDER_PROFILE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown provider profile fields: {', '.join(sorted(unknown))}")
        now = utc_now_iso()
        profile_id = f"pp_{uuid4().hex[:8]}"
        specialties = normalize_specialties(fields.get("specialties") or ["General Ceremonies"])
        with self._session() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO provider_profiles (
                        id, user_id, name, description, specialties_json, experience_years, base_price,
                        availability, location, avatar_url, approval_status, rating, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        profile_id,
                        user_id,
                        fields.get("name") or "New Priest",
                        fields.get("description") or "Experienced priest offering spiritual services",
                        json.dumps(specialties),
                        int(fields.get("experience_years", 1)),
                        float(fields.get("base_price", 100)),
                        fields.get("availability") or "Available for booking",
                        fields.get("location") or "Temple",
                        fields.get("avatar_url") or "/placeholder.svg",
                        fields.get("approval_status", "pending"),
                        float(fields.get("rating", 0)),
                        now,
                        now,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ConflictError("Provider profile already exists for user") from exc
            row = conn.execute("SELECT * FROM provider_profiles WHERE id = ?", (profile_id,)).fetchone()
        return self._row_to_provider_profile(row)

    def update_provider_profile_for_user(self, user_id: str, **fields: Any) -> ProviderProfile:
        unknown = set(fields) - PROVIDER_PROFILE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown provider profile fields: {', '.join(sorted(unknown))}")
        values: Dict[str, Any] = {}
        for key, value in fields.items():
            if key == "specialties":
                values["specialties_json"] = json.dumps(normalize_specialties(value))
            else:
                values[key] = value
        values["updated_at"] = utc_now_iso()
        assignments = ", ".join(f"{key} = ?" for key in values)
        with self._session() as conn:
            cursor = conn.execute(
                f"UPDATE provider_profiles SET {assignments} WHERE user_id = ?",
                (*values.values(), user_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("Provider profile not found")
            row = conn.execute("SELECT * FROM provider_profiles WHERE user_id = ?", (user_id,)).fetchone()
        return self._row_to_provider_profile(row)

    # Bookings

    def _row_to_booking(self, row: sqlite3.Row) -> Booking:
        return Booking(
            id=row["id"],
            requester_id=row["requester_id"],
            provider_id=row["provider_id"],
            scheduled_at=row["scheduled_at"],
            purpose=row["purpose"],
            address=row["address"],
            notes=row["notes"],
            price=float(row["price"]),
            status=row["status"],
            journey_started=bool(row["journey_started"]),
            estimated_arrival=row["estimated_arrival"],
            payment_reference=row["payment_reference"],
            version=int(row["version"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def insert_booking(self, booking: Booking) -> Booking:
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO bookings (
                    id, requester_id, provider_id, scheduled_at, purpose, address, notes, price, status,
                    journey_started, estimated_arrival, payment_reference, version, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    booking.id,
                    booking.requester_id,
                    booking.provider_id,
                    booking.scheduled_at,
                    booking.purpose,
                    booking.address,
                    booking.notes,
                    booking.price,
                    booking.status,
                    int(booking.journey_started),
                    booking.estimated_arrival,
                    booking.payment_reference,
                    booking.version,
                    booking.created_at,
                    booking.updated_at,
                ),
            )
        return booking

    def get_booking(self, booking_id: str) -> Optional[Booking]:
        with self._session() as conn:
            row = conn.execute("SELECT * FROM bookings WHERE id = ?", (booking_id,)).fetchone()
        return self._row_to_booking(row) if row else None

    def list_bookings(
        self,
        requester_id: Optional[str] = None,
        provider_id: Optional[str] = None,
    ) -> List[Booking]:
        query = "SELECT * FROM bookings"
        clauses: List[str] = []
        params: List[Any] = []
        if requester_id:
            clauses.append("requester_id = ?")
            params.append(requester_id)
        if provider_id:
            clauses.append("provider_id = ?")
            params.append(provider_id)
        if clauses:
            query += " WHERE " + " OR ".join(clauses)
        query += " ORDER BY scheduled_at DESC, created_at DESC"
        with self._session() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [self._row_to_booking(row) for row in rows]

    def update_booking_if_version(self, booking_id: str, expected_version: int, **fields: Any) -> Optional[Booking]:
        """Conditional write; returns None when the stored version moved on."""
        unknown = set(fields) - BOOKING_MUTABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown booking fields: {', '.join(sorted(unknown))}")
        values: Dict[str, Any] = {}
        for key, value in fields.items():
            values[key] = int(value) if key == "journey_started" else value
        values["updated_at"] = utc_now_iso()
        assignments = ", ".join(f"{key} = ?" for key in values)
        with self._session() as conn:
            cursor = conn.execute(
                f"UPDATE bookings SET {assignments}, version = version + 1 WHERE id = ? AND version = ?",
                (*values.values(), booking_id, expected_version),
            )
            if cursor.rowcount == 0:
                return None
            row = conn.execute("SELECT * FROM bookings WHERE id = ?", (booking_id,)).fetchone()
        return self._row_to_booking(row)

    # Location samples

    def _row_to_sample(self, row: sqlite3.Row) -> LocationSample:
        return LocationSample(
            booking_id=row["booking_id"],
            provider_id=row["provider_id"],
            latitude=float(row["latitude"]),
            longitude=float(row["longitude"]),
            speed=row["speed"],
            heading=row["heading"],
            accuracy=row["accuracy"],
            captured_at=row["captured_at"],
        )

    def record_location_sample(self, sample: LocationSample) -> bool:
        """Upsert the latest sample only while the booking is confirmed with the journey started."""
        with self._session() as conn:
            cursor = conn.execute(
                """
                INSERT INTO location_samples (booking_id, provider_id, latitude, longitude, speed, heading, accuracy, captured_at)
                SELECT b.id, b.provider_id, ?, ?, ?, ?, ?, ?
                FROM bookings b
                WHERE b.id = ? AND b.status = 'confirmed' AND b.journey_started = 1
                ON CONFLICT(booking_id) DO UPDATE SET
                    provider_id = excluded.provider_id,
                    latitude = excluded.latitude,
                    longitude = excluded.longitude,
                    speed = excluded.speed,
                    heading = excluded.heading,
                    accuracy = excluded.accuracy,
                    captured_at = excluded.captured_at
                """,
                (
                    sample.latitude,
                    sample.longitude,
                    sample.speed,
                    sample.heading,
                    sample.accuracy,
                    sample.captured_at,
                    sample.booking_id,
                ),
            )
            return cursor.rowcount > 0

    def get_location_sample(self, booking_id: str) -> Optional[LocationSample]:
        with self._session() as conn:
            row = conn.execute("SELECT * FROM location_samples WHERE booking_id = ?", (booking_id,)).fetchone()
        return self._row_to_sample(row) if row else None

    # Reviews

    def _row_to_review(self, row: sqlite3.Row) -> Review:
        return Review(
            id=row["id"],
            booking_id=row["booking_id"],
            provider_id=row["provider_id"],
            reviewer_id=row["reviewer_id"],
            rating=int(row["rating"]),
            comment=row["comment"],
            created_at=row["created_at"],
        )

    def insert_review(self, review: Review) -> float:
        """Store one review per booking and recompute the provider's average; returns the new rating."""
        with self._session() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO reviews (id, booking_id, provider_id, reviewer_id, rating, comment, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        review.id,
                        review.booking_id,
                        review.provider_id,
                        review.reviewer_id,
                        review.rating,
                        review.comment,
                        review.created_at,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ConflictError("Booking already reviewed") from exc
            average = conn.execute(
                "SELECT AVG(rating) FROM reviews WHERE provider_id = ?", (review.provider_id,)
            ).fetchone()[0]
            rating = round(float(average or 0), 2)
            conn.execute(
                "UPDATE provider_profiles SET rating = ?, updated_at = ? WHERE id = ?",
                (rating, utc_now_iso(), review.provider_id),
            )
        return rating

    def list_reviews(self, provider_id: str) -> List[Review]:
        with self._session() as conn:
            rows = conn.execute(
                "SELECT * FROM reviews WHERE provider_id = ? ORDER BY created_at DESC", (provider_id,)
            ).fetchall()
        return [self._row_to_review(row) for row in rows]


default_db = str(Path(__file__).resolve().parents[2] / "data" / "seva.sqlite3")
seva_store = SevaStore(db_path=os.getenv("SEVA_DB_PATH", default_db))
