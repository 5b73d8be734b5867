"""
Repository pattern for data access.

Handles persistence of daily API call counters and per-service configs.
"""

from typing import List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import DEFAULT_DAILY_LIMIT, ApiConfig, ApiUsage

# Stored in place of NULL so the unique constraint also covers global counters
GLOBAL_USER = ""


def _user_column(user_id: Optional[str]) -> str:
    return user_id if user_id else GLOBAL_USER


def _row_to_usage(row) -> ApiUsage:
    return ApiUsage(
        service=row[0],
        endpoint=row[1],
        date=row[2],
        user_id=row[3] or None,
        count=row[4]
    )


class UsageRepository:
    """Repository for API usage counters and service configurations.

    Every method opens its own short-lived connection, so one instance can
    be shared across request handlers.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def initialize_schema(self) -> None:
        """Create the quota tables for this repository's database."""
        initialize_schema(self.db_path)

    # ------------------------------------------------------------------ #
    # Service configuration
    # ------------------------------------------------------------------ #
    def find_config(self, service: str) -> Optional[ApiConfig]:
        """Fetch the stored configuration for a service.

        Args:
            service: Service name

        Returns:
            The stored config, or None if the service was never configured
        """
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT service, daily_limit, enabled FROM api_config WHERE service = ?",
                (service,)
            ).fetchone()
            if row is None:
                return None
            return ApiConfig(service=row[0], daily_limit=row[1], enabled=bool(row[2]))
        finally:
            conn.close()

    def get_or_create_config(
        self,
        service: str,
        daily_limit: int = DEFAULT_DAILY_LIMIT,
        enabled: bool = True
    ) -> ApiConfig:
        """Fetch a service config, creating it with defaults if absent.

        Uses INSERT OR IGNORE followed by a read, so two concurrent first
        reads both end up with the single stored row.

        Args:
            service: Service name
            daily_limit: Limit to store if the service is new
            enabled: Enabled flag to store if the service is new

        Returns:
            The stored config
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "INSERT OR IGNORE INTO api_config (service, daily_limit, enabled) VALUES (?, ?, ?)",
                (service, daily_limit, int(enabled))
            )
            row = conn.execute(
                "SELECT service, daily_limit, enabled FROM api_config WHERE service = ?",
                (service,)
            ).fetchone()
            conn.commit()
            return ApiConfig(service=row[0], daily_limit=row[1], enabled=bool(row[2]))
        finally:
            conn.close()

    def upsert_config(
        self,
        service: str,
        daily_limit: Optional[int] = None,
        enabled: Optional[bool] = None
    ) -> ApiConfig:
        """Create or partially update a service config.

        Fields left as None keep their stored value, or the default when
        the service is new.

        Args:
            service: Service name
            daily_limit: New daily limit
            enabled: New enabled flag

        Returns:
            The config as stored after the update
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO api_config (service, daily_limit, enabled)
                VALUES (?, ?, ?)
                ON CONFLICT(service) DO UPDATE SET
                    daily_limit = COALESCE(?, api_config.daily_limit),
                    enabled = COALESCE(?, api_config.enabled)
            """, (
                service,
                daily_limit if daily_limit is not None else DEFAULT_DAILY_LIMIT,
                int(enabled) if enabled is not None else 1,
                daily_limit,
                int(enabled) if enabled is not None else None
            ))
            row = conn.execute(
                "SELECT service, daily_limit, enabled FROM api_config WHERE service = ?",
                (service,)
            ).fetchone()
            conn.commit()
            return ApiConfig(service=row[0], daily_limit=row[1], enabled=bool(row[2]))
        finally:
            conn.close()

    # ------------------------------------------------------------------ #
    # Usage counters
    # ------------------------------------------------------------------ #
    def find_usage(
        self,
        service: str,
        endpoint: str,
        date: str,
        user_id: Optional[str] = None
    ) -> Optional[ApiUsage]:
        """Fetch a single counter.

        Args:
            service: Service name
            endpoint: Endpoint name
            date: Day in YYYY-MM-DD format
            user_id: Optional user, None for the global counter

        Returns:
            The counter, or None if no call was recorded
        """
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT service, endpoint, date, user_id, count
                FROM api_usage
                WHERE service = ? AND endpoint = ? AND date = ? AND user_id = ?
            """, (service, endpoint, date, _user_column(user_id))).fetchone()
            return _row_to_usage(row) if row else None
        finally:
            conn.close()

    def increment_usage(
        self,
        service: str,
        endpoint: str,
        date: str,
        user_id: Optional[str] = None,
        limit: Optional[int] = None
    ) -> Optional[int]:
        """Increment a counter, creating it at 1 if absent.

        The update-if-exists-else-create happens in a single statement. When
        `limit` is given the statement only fires while the stored count is
        below it, making the check and the increment atomic.

        Args:
            service: Service name
            endpoint: Endpoint name
            date: Day in YYYY-MM-DD format
            user_id: Optional user, None for the global counter
            limit: Optional ceiling the increment must not cross

        Returns:
            The new count, or None if the increment was refused by `limit`
        """
        user = _user_column(user_id)
        conn = get_connection(self.db_path)
        try:
            before = conn.total_changes
            if limit is None:
                conn.execute("""
                    INSERT INTO api_usage (service, endpoint, date, user_id, count)
                    VALUES (?, ?, ?, ?, 1)
                    ON CONFLICT(service, endpoint, date, user_id)
                    DO UPDATE SET count = api_usage.count + 1
                """, (service, endpoint, date, user))
            else:
                conn.execute("""
                    INSERT INTO api_usage (service, endpoint, date, user_id, count)
                    SELECT ?, ?, ?, ?, 1 WHERE ? > 0
                    ON CONFLICT(service, endpoint, date, user_id)
                    DO UPDATE SET count = api_usage.count + 1
                    WHERE api_usage.count < ?
                """, (service, endpoint, date, user, limit, limit))
            changed = conn.total_changes - before
            row = conn.execute("""
                SELECT count FROM api_usage
                WHERE service = ? AND endpoint = ? AND date = ? AND user_id = ?
            """, (service, endpoint, date, user)).fetchone()
            conn.commit()
            if not changed:
                return None
            return row[0]
        finally:
            conn.close()

    def delete_usage(self, service: str, date: str) -> int:
        """Delete every counter of a service for one day.

        Args:
            service: Service name
            date: Day in YYYY-MM-DD format

        Returns:
            Number of deleted counters
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "DELETE FROM api_usage WHERE service = ? AND date = ?",
                (service, date)
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def delete_usage_before(self, cutoff_date: str) -> int:
        """Delete all counters dated strictly before the cutoff.

        Args:
            cutoff_date: Day in YYYY-MM-DD format

        Returns:
            Number of deleted counters
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("DELETE FROM api_usage WHERE date < ?", (cutoff_date,))
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def fetch_usage(self, service: str, start_date: str, end_date: str) -> List[ApiUsage]:
        """Fetch the counters of a service within an inclusive date range.

        Args:
            service: Service name
            start_date: First day (YYYY-MM-DD)
            end_date: Last day (YYYY-MM-DD)

        Returns:
            Counters ordered by date (newest first), then endpoint
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT service, endpoint, date, user_id, count
                FROM api_usage
                WHERE service = ? AND date >= ? AND date <= ?
                ORDER BY date DESC, endpoint ASC
            """, (service, start_date, end_date))
            return [_row_to_usage(row) for row in cursor.fetchall()]
        finally:
            conn.close()


# Global repository instance
_default_repository: Optional[UsageRepository] = None


def get_repository(db_path: str = DEFAULT_DB_PATH) -> UsageRepository:
    """Get a repository instance.

    This function provides a singleton instance of the UsageRepository.

    Args:
        db_path: Path to SQLite database file

    Returns:
        An instance of UsageRepository
    """
    global _default_repository
    if _default_repository is None:
        _default_repository = UsageRepository(db_path)
    return _default_repository


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the api_usage and api_config tables if they don't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS api_usage (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                service TEXT NOT NULL,
                endpoint TEXT NOT NULL,
                date TEXT NOT NULL,
                user_id TEXT NOT NULL DEFAULT '',
                count INTEGER NOT NULL DEFAULT 0,
                UNIQUE (service, endpoint, date, user_id)
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS api_config (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                service TEXT NOT NULL UNIQUE,
                daily_limit INTEGER NOT NULL DEFAULT 2000,
                enabled INTEGER NOT NULL DEFAULT 1
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_api_usage_date ON api_usage (date)")
        conn.commit()
    finally:
        conn.close()
