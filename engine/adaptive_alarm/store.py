"""
SQLAlchemy persistence for users, credentials, alarms and PKCE verifiers
"""

import logging
import threading
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Integer, String, Float, Text,
    create_engine, delete, select, update,
)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .exceptions import ConfigurationError
from .models import Alarm, Credential, TokenPair

logger = logging.getLogger(__name__)

Base = declarative_base()


class UserRow(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    email = Column(String(255), unique=True, nullable=True)
    fitbit_user_id = Column(String(64), unique=True, nullable=True, index=True)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    resting_heart_rate = Column(Float, nullable=True)

    def __repr__(self):
        return f"<UserRow(id={self.id}, fitbit_user_id={self.fitbit_user_id})>"


class AlarmRow(Base):
    __tablename__ = "alarms"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    hour = Column(Integer, nullable=False)
    minute = Column(Integer, nullable=False)
    is_on = Column(Boolean, nullable=False, default=True)
    sound_nonrem = Column(String(255), nullable=True)
    sound_rem = Column(String(255), nullable=True)

    def __repr__(self):
        return f"<AlarmRow(id={self.id}, user_id={self.user_id}, {self.hour:02d}:{self.minute:02d}, on={self.is_on})>"


class PendingAuthorizationRow(Base):
    __tablename__ = "pending_authorizations"

    state = Column(String(128), primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    code_verifier = Column(String(128), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)


class PendingAuthorization:
    """Verifier waiting for its authorization code"""

    def __init__(self, state: str, user_id: int, code_verifier: str, created_at: datetime):
        self.state = state
        self.user_id = user_id
        self.code_verifier = code_verifier
        self.created_at = created_at


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone=True columns
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Store:
    """Persistence collaborator injected into the engine"""

    def __init__(self, engine):
        self._engine = engine
        self._sessions = sessionmaker(bind=engine, expire_on_commit=False)
        self._write_lock = threading.Lock()

    @classmethod
    def from_url(cls, database_url: str) -> "Store":
        """Open the database once at process start and create missing tables"""
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            engine = create_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        elif database_url.startswith("sqlite"):
            engine = create_engine(database_url, connect_args={"check_same_thread": False})
        else:
            engine = create_engine(database_url, pool_pre_ping=True)
        Base.metadata.create_all(engine)
        logger.info("Opened alarm store", extra={"database": engine.url.render_as_string(hide_password=True)})
        return cls(engine)

    def close(self) -> None:
        self._engine.dispose()
        logger.info("Closed alarm store")

    # --- credentials ---

    def get_credential(self, user_id: int) -> Optional[Credential]:
        with self._sessions() as session:
            user = session.get(UserRow, user_id)
            if user is None or not user.access_token or not user.refresh_token:
                return None
            return Credential(
                user_id=user.id,
                subject_id=user.fitbit_user_id,
                access_token=user.access_token,
                refresh_token=user.refresh_token,
            )

    def save_credential(self, user_id: int, tokens: TokenPair,
                        expected_refresh_token: Optional[str] = None) -> bool:
        """
        Replace both tokens in one transaction.

        Args:
            user_id: Local user ID
            tokens: New token pair
            expected_refresh_token: When given, only write if the stored refresh
                token still equals it (compare-and-swap)

        Returns:
            True if the row was written, False if the swap lost to another writer
        """
        values = {"access_token": tokens.access_token, "refresh_token": tokens.refresh_token}
        if tokens.subject_id:
            values["fitbit_user_id"] = tokens.subject_id

        stmt = update(UserRow).where(UserRow.id == user_id)
        if expected_refresh_token is not None:
            stmt = stmt.where(UserRow.refresh_token == expected_refresh_token)

        with self._write_lock, self._sessions.begin() as session:
            result = session.execute(stmt.values(**values))
            written = result.rowcount == 1
        if not written:
            logger.info(
                "Credential write skipped",
                extra={"user_id": user_id, "compare_and_swap": expected_refresh_token is not None}
            )
        return written

    def get_subject_id(self, user_id: int) -> Optional[str]:
        with self._sessions() as session:
            user = session.get(UserRow, user_id)
            return user.fitbit_user_id if user else None

    def list_linked_users(self) -> List[int]:
        with self._sessions() as session:
            rows = session.execute(
                select(UserRow.id).where(UserRow.fitbit_user_id.is_not(None)).order_by(UserRow.id)
            )
            return [row[0] for row in rows]

    # --- resting heart rate ---

    def get_resting_rate(self, subject_id: str) -> Optional[float]:
        with self._sessions() as session:
            rate = session.execute(
                select(UserRow.resting_heart_rate).where(UserRow.fitbit_user_id == subject_id)
            ).scalar_one_or_none()
            return rate

    def save_resting_rate(self, subject_id: str, rate: float) -> None:
        with self._write_lock, self._sessions.begin() as session:
            session.execute(
                update(UserRow).where(UserRow.fitbit_user_id == subject_id).values(resting_heart_rate=rate)
            )

    # --- alarms ---

    def list_enabled_alarms(self, user_id: int) -> List[Alarm]:
        """Enabled alarms for a user in ascending id order; malformed rows are skipped"""
        with self._sessions() as session:
            rows = session.execute(
                select(AlarmRow).where(AlarmRow.user_id == user_id, AlarmRow.is_on.is_(True)).order_by(AlarmRow.id)
            ).scalars().all()

        alarms = []
        for row in rows:
            try:
                alarms.append(Alarm(
                    id=row.id,
                    owner_id=row.user_id,
                    hour=row.hour,
                    minute=row.minute,
                    enabled=bool(row.is_on),
                    sound_a=row.sound_nonrem,
                    sound_b=row.sound_rem,
                ))
            except ValueError as e:
                error = ConfigurationError(str(e))
                logger.error(
                    f"Skipping malformed alarm row: {error}",
                    extra={"user_id": user_id, "alarm_id": row.id, "error_type": type(error).__name__}
                )
        return alarms

    # --- thin CRUD used by the CLI and tests ---

    def add_user(self, email: Optional[str] = None, subject_id: Optional[str] = None,
                 tokens: Optional[TokenPair] = None, resting_heart_rate: Optional[float] = None) -> int:
        with self._write_lock, self._sessions.begin() as session:
            user = UserRow(
                email=email,
                fitbit_user_id=subject_id or (tokens.subject_id if tokens else None),
                access_token=tokens.access_token if tokens else None,
                refresh_token=tokens.refresh_token if tokens else None,
                resting_heart_rate=resting_heart_rate,
            )
            session.add(user)
            session.flush()
            return user.id

    def add_alarm(self, user_id: int, hour: int, minute: int, sound_nonrem: Optional[str],
                  sound_rem: Optional[str], enabled: bool = True) -> int:
        with self._write_lock, self._sessions.begin() as session:
            alarm = AlarmRow(
                user_id=user_id, hour=hour, minute=minute, is_on=enabled,
                sound_nonrem=sound_nonrem, sound_rem=sound_rem,
            )
            session.add(alarm)
            session.flush()
            return alarm.id

    def set_alarm_enabled(self, user_id: int, alarm_id: int, enabled: bool) -> bool:
        with self._write_lock, self._sessions.begin() as session:
            result = session.execute(
                update(AlarmRow).where(AlarmRow.id == alarm_id, AlarmRow.user_id == user_id).values(is_on=enabled)
            )
            return result.rowcount == 1

    # --- PKCE verifiers ---

    def save_pending_authorization(self, state: str, user_id: int, code_verifier: str,
                                   created_at: Optional[datetime] = None) -> None:
        created_at = created_at or datetime.now(timezone.utc)
        with self._write_lock, self._sessions.begin() as session:
            # One outstanding attempt per user
            session.execute(
                delete(PendingAuthorizationRow).where(PendingAuthorizationRow.user_id == user_id)
            )
            session.add(PendingAuthorizationRow(
                state=state, user_id=user_id, code_verifier=code_verifier, created_at=created_at,
            ))

    def pop_pending_authorization(self, state: str) -> Optional[PendingAuthorization]:
        """Remove and return the verifier for state; a verifier can be popped once"""
        with self._write_lock, self._sessions.begin() as session:
            row = session.get(PendingAuthorizationRow, state)
            if row is None:
                return None
            pending = PendingAuthorization(
                state=row.state,
                user_id=row.user_id,
                code_verifier=row.code_verifier,
                created_at=_as_utc(row.created_at),
            )
            session.delete(row)
            return pending
