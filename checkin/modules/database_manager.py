"""
Database Manager Module - QR Check-in Attendance System

This module handles all database operations for the attendance system.
It provides the SQLite implementation of the attendance store: schema
creation, session and record persistence, system settings, and the
connection and transaction helpers the rest of the system builds on.

Features:
- SQLite database connection management
- Idempotent schema creation
- Atomic duplicate prevention through a unique index
- Transaction support
- System settings storage
- Error handling and logging
"""

import sqlite3
import logging
from datetime import datetime
from contextlib import contextmanager
import threading
import os
from typing import Any, Dict, List, Optional

from checkin.modules.attendance_store import (
    AttendanceRecord,
    AttendanceStore,
    DuplicateRecordError,
    PersistenceError,
)
from checkin.modules.token_codec import Geofence, SessionDescriptor, ensure_utc


def _to_db_time(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec='microseconds')


def _from_db_time(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return ensure_utc(datetime.fromisoformat(value))


class DatabaseManager(AttendanceStore):
    """
    SQLite-backed attendance store.
    Handles connection management, schema creation and all reads and writes
    of attendance sessions and records, with proper error handling and
    transaction support.
    """

    def __init__(self, db_path):
        """
        Initialize the database manager with the specified database path.

        Args:
            db_path (str): Path to the SQLite database file, or ':memory:'
        """
        self.db_path = str(db_path)
        self.logger = logging.getLogger(__name__)
        self._local = threading.local()
        self._shared_connection = None
        self._shared_lock = threading.RLock()

        if self.db_path == ':memory:':
            # One in-memory database must be shared by every thread
            self._shared_connection = self._connect()
        else:
            directory = os.path.dirname(self.db_path)
            if directory:
                os.makedirs(directory, exist_ok=True)

        self.initialize_database()

    def _connect(self):
        connection = sqlite3.connect(
            self.db_path,
            check_same_thread=False,
            timeout=30.0
        )
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        return connection

    @contextmanager
    def get_connection(self):
        """
        Context manager for database connections with rollback on error.
        Provides thread-local connections for file databases.

        Yields:
            sqlite3.Connection: Database connection object
        """
        if self._shared_connection is not None:
            with self._shared_lock:
                try:
                    yield self._shared_connection
                except Exception as e:
                    self._shared_connection.rollback()
                    self.logger.debug(f"Database operation rolled back: {str(e)}")
                    raise
            return

        if not hasattr(self._local, 'connection'):
            self._local.connection = self._connect()

        try:
            yield self._local.connection
        except Exception as e:
            self._local.connection.rollback()
            self.logger.debug(f"Database operation rolled back: {str(e)}")
            raise

    def initialize_database(self):
        """
        Create all necessary tables and default settings.
        This method is idempotent and can be called multiple times safely.
        """
        try:
            with self.get_connection() as conn:
                cursor = conn.cursor()

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS attendance_sessions (
                        session_token VARCHAR(128) PRIMARY KEY,
                        class_id VARCHAR(100) NOT NULL,
                        class_name VARCHAR(200) DEFAULT '',
                        issuer_id VARCHAR(100) DEFAULT '',
                        issued_at TIMESTAMP,
                        expires_at TIMESTAMP NOT NULL,
                        geofence_latitude REAL,
                        geofence_longitude REAL,
                        geofence_radius REAL,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )
                """)

                # One record per user and session, enforced by the database
                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS attendance_records (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        record_id VARCHAR(64) UNIQUE NOT NULL,
                        user_id VARCHAR(100) NOT NULL,
                        class_id VARCHAR(100) NOT NULL,
                        class_name VARCHAR(200) DEFAULT '',
                        session_token VARCHAR(128) NOT NULL,
                        recorded_at TIMESTAMP NOT NULL,
                        outcome VARCHAR(20) NOT NULL,
                        latitude REAL,
                        longitude REAL,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        UNIQUE(user_id, session_token)
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS system_settings (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        setting_key VARCHAR(100) UNIQUE NOT NULL,
                        setting_value TEXT,
                        description TEXT,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )
                """)

                cursor.execute("CREATE INDEX IF NOT EXISTS idx_records_user ON attendance_records(user_id)")
                cursor.execute("CREATE INDEX IF NOT EXISTS idx_records_class ON attendance_records(class_id)")
                cursor.execute("CREATE INDEX IF NOT EXISTS idx_sessions_class ON attendance_sessions(class_id)")

                self._insert_default_data(cursor)
                conn.commit()

                self.logger.info("Database initialized successfully")

        except sqlite3.Error as e:
            self.logger.error(f"Failed to initialize database: {str(e)}")
            raise PersistenceError(f"Failed to initialize database: {str(e)}") from e

    def _insert_default_data(self, cursor):
        """
        Insert default system settings when none exist.

        Args:
            cursor: Database cursor object
        """
        cursor.execute("SELECT COUNT(*) FROM system_settings")
        if cursor.fetchone()[0] == 0:
            default_settings = [
                ('system_name', 'QR Check-in', 'Name of the attendance system'),
            ]

            cursor.executemany("""
                INSERT INTO system_settings (setting_key, setting_value, description)
                VALUES (?, ?, ?)
            """, default_settings)

    def execute_query(self, query, params=None, fetch_all=True):
        """
        Execute a SELECT query and return results.

        Args:
            query (str): SQL query string
            params (tuple): Query parameters
            fetch_all (bool): Whether to fetch all results or just one

        Returns:
            list or dict: Query results
        """
        try:
            with self.get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(query, params or ())

                if fetch_all:
                    return [dict(row) for row in cursor.fetchall()]

                result = cursor.fetchone()
                return dict(result) if result else None

        except sqlite3.Error as e:
            self.logger.error(f"Query execution failed: {str(e)}")
            raise PersistenceError(str(e)) from e

    def execute_update(self, query, params=None):
        """
        Execute an INSERT, UPDATE, or DELETE query.

        Args:
            query (str): SQL query string
            params (tuple): Query parameters

        Returns:
            int: Number of affected rows or last inserted row ID
        """
        try:
            with self.get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(query, params or ())
                conn.commit()

                if query.strip().upper().startswith('INSERT'):
                    return cursor.lastrowid
                return cursor.rowcount

        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            self.logger.error(f"Update execution failed: {str(e)}")
            raise PersistenceError(str(e)) from e

    @contextmanager
    def transaction(self):
        """
        Context manager for database transactions with automatic rollback on error.

        Yields:
            sqlite3.Connection: Database connection within transaction
        """
        with self.get_connection() as conn:
            try:
                yield conn
                conn.commit()
            except Exception as e:
                conn.rollback()
                self.logger.error(f"Transaction rolled back: {str(e)}")
                raise

    # Attendance store interface

    def save(self, record: AttendanceRecord) -> AttendanceRecord:
        """
        Insert an attendance record; never overwrites an existing one.

        Raises:
            DuplicateRecordError: if the user already has a record for the session
            PersistenceError: on any other database failure
        """
        try:
            self.execute_update(
                """INSERT INTO attendance_records
                   (record_id, user_id, class_id, class_name, session_token,
                    recorded_at, outcome, latitude, longitude)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (record.record_id, record.user_id, record.class_id, record.class_name,
                 record.session_token, _to_db_time(record.recorded_at), record.outcome,
                 record.latitude, record.longitude)
            )
        except sqlite3.IntegrityError as e:
            if self.exists(record.user_id, record.session_token):
                raise DuplicateRecordError(record.user_id, record.session_token) from e
            self.logger.error(f"Failed to record attendance: {str(e)}")
            raise PersistenceError(str(e)) from e

        return record

    def exists(self, user_id: str, session_token: str) -> bool:
        row = self.execute_query(
            """SELECT 1 AS found FROM attendance_records
               WHERE user_id = ? AND session_token = ?""",
            (user_id, session_token),
            fetch_all=False
        )
        return row is not None

    def list_by_user(self, user_id: str) -> List[AttendanceRecord]:
        rows = self.execute_query(
            """SELECT * FROM attendance_records
               WHERE user_id = ?
               ORDER BY recorded_at DESC, id DESC""",
            (user_id,)
        )
        return [self._row_to_record(row) for row in rows]

    def save_session(self, descriptor: SessionDescriptor) -> SessionDescriptor:
        geofence = descriptor.geofence
        try:
            self.execute_update(
                """INSERT INTO attendance_sessions
                   (session_token, class_id, class_name, issuer_id, issued_at, expires_at,
                    geofence_latitude, geofence_longitude, geofence_radius)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (descriptor.session_token, descriptor.class_id, descriptor.class_name,
                 descriptor.issuer_id, _to_db_time(descriptor.issued_at),
                 _to_db_time(descriptor.expires_at),
                 geofence.latitude if geofence else None,
                 geofence.longitude if geofence else None,
                 geofence.radius_meters if geofence else None)
            )
        except sqlite3.IntegrityError as e:
            self.logger.error(f"Session token collision: {descriptor.session_token}")
            raise PersistenceError(f"Session already stored: {descriptor.session_token}") from e

        return descriptor

    def get_session(self, session_token: str) -> Optional[SessionDescriptor]:
        row = self.execute_query(
            "SELECT * FROM attendance_sessions WHERE session_token = ?",
            (session_token,),
            fetch_all=False
        )
        return self._row_to_session(row) if row else None

    def list_sessions(self, class_id: str) -> List[SessionDescriptor]:
        rows = self.execute_query(
            """SELECT * FROM attendance_sessions
               WHERE class_id = ?
               ORDER BY expires_at DESC""",
            (class_id,)
        )
        return [self._row_to_session(row) for row in rows]

    def _row_to_record(self, row: Dict[str, Any]) -> AttendanceRecord:
        return AttendanceRecord(
            record_id=row['record_id'],
            user_id=row['user_id'],
            class_id=row['class_id'],
            class_name=row['class_name'] or '',
            session_token=row['session_token'],
            recorded_at=_from_db_time(row['recorded_at']),
            outcome=row['outcome'],
            latitude=row['latitude'],
            longitude=row['longitude']
        )

    def _row_to_session(self, row: Dict[str, Any]) -> SessionDescriptor:
        geofence = None
        if row['geofence_radius'] is not None:
            geofence = Geofence(
                row['geofence_latitude'],
                row['geofence_longitude'],
                row['geofence_radius']
            )

        return SessionDescriptor(
            class_id=row['class_id'],
            class_name=row['class_name'] or '',
            issuer_id=row['issuer_id'] or '',
            session_token=row['session_token'],
            issued_at=_from_db_time(row['issued_at']),
            expires_at=_from_db_time(row['expires_at']),
            geofence=geofence
        )

    # System settings

    def get_system_setting(self, key, default_value=None):
        """
        Get a system setting value by key.

        Args:
            key (str): Setting key
            default_value: Default value if setting not found

        Returns:
            str: Setting value
        """
        try:
            result = self.execute_query(
                "SELECT setting_value FROM system_settings WHERE setting_key = ?",
                (key,),
                fetch_all=False
            )
            return result['setting_value'] if result else default_value

        except PersistenceError as e:
            self.logger.error(f"Failed to get system setting {key}: {str(e)}")
            return default_value

    def update_system_setting(self, key, value, description=None):
        """
        Update or insert a system setting.

        Args:
            key (str): Setting key
            value (str): Setting value
            description (str): Setting description

        Returns:
            bool: Success status
        """
        try:
            with self.transaction() as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT id FROM system_settings WHERE setting_key = ?", (key,))

                if cursor.fetchone():
                    cursor.execute("""
                        UPDATE system_settings
                        SET setting_value = ?, description = COALESCE(?, description),
                            updated_at = CURRENT_TIMESTAMP
                        WHERE setting_key = ?
                    """, (str(value), description, key))
                else:
                    cursor.execute("""
                        INSERT INTO system_settings (setting_key, setting_value, description)
                        VALUES (?, ?, ?)
                    """, (key, str(value), description))

                return True

        except sqlite3.Error as e:
            self.logger.error(f"Failed to update system setting {key}: {str(e)}")
            return False

    def close_all_connections(self):
        """Close database connections for cleanup."""
        try:
            if self._shared_connection is not None:
                self._shared_connection.close()
                self._shared_connection = None
            if hasattr(self._local, 'connection'):
                self._local.connection.close()
                del self._local.connection
        except sqlite3.Error as e:
            self.logger.error(f"Error closing connections: {str(e)}")
