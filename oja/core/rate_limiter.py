import json
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Callable, Optional

from loguru import logger

from core.errors import RateLimited

COOLDOWN_SECONDS = 6.0
DAILY_LIMIT = 200

LAST_REQUEST_KEY = "oja_voice_last_request"
DAILY_KEY = "oja_voice_daily"


class StoreUnavailable(Exception):
    """The rate-limit persistence layer could not be read or written."""


@dataclass
class RateLimitState:
    last_request_at: Optional[float] = None  # epoch seconds
    daily_count: int = 0
    daily_window_date: Optional[str] = None  # ISO date


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    reason: Optional[str] = None

    @classmethod
    def allow(cls) -> "RateLimitDecision":
        return cls(True)

    @classmethod
    def deny(cls, reason: str) -> "RateLimitDecision":
        return cls(False, reason)

    def to_error(self) -> Optional[RateLimited]:
        return None if self.allowed else RateLimited(self.reason)


class RateLimitStore(ABC):
    """Durable home for the two rate-limit entries.

    The last-request timestamp and the (date, count) pair are read and
    written independently of any session.
    """

    @abstractmethod
    def read_last_request(self) -> Optional[float]:
        ...

    @abstractmethod
    def write_last_request(self, timestamp: float) -> None:
        ...

    @abstractmethod
    def read_daily(self) -> Optional[tuple[str, int]]:
        ...

    @abstractmethod
    def write_daily(self, day: str, count: int) -> None:
        ...

    def read_state(self) -> RateLimitState:
        daily = self.read_daily()
        last = self.read_last_request()
        if daily is None:
            return RateLimitState(last_request_at=last)
        return RateLimitState(last_request_at=last, daily_count=daily[1], daily_window_date=daily[0])

    def record(self, timestamp: float, day: str, count: int) -> None:
        """Store an admitted request: the new timestamp and the day's count."""
        self.write_daily(day, count)
        self.write_last_request(timestamp)


class MemoryRateLimitStore(RateLimitStore):
    """In-process store. Counters do not survive a restart."""

    def __init__(self):
        self._values: dict = {}

    def read_last_request(self) -> Optional[float]:
        return self._values.get(LAST_REQUEST_KEY)

    def write_last_request(self, timestamp: float) -> None:
        self._values[LAST_REQUEST_KEY] = timestamp

    def read_daily(self) -> Optional[tuple[str, int]]:
        return self._values.get(DAILY_KEY)

    def write_daily(self, day: str, count: int) -> None:
        self._values[DAILY_KEY] = (day, count)


class JsonRateLimitStore(RateLimitStore):
    """Keeps both entries in a small JSON document, replaced atomically."""

    def __init__(self, path: Path):
        self.path = path

    def _read_all(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text())
        except (OSError, ValueError) as e:
            raise StoreUnavailable(f"cannot read {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise StoreUnavailable(f"unexpected content in {self.path}")
        return data

    def _write_key(self, key: str, value) -> None:
        data = self._read_all()
        data[key] = value
        self._write_all(data)

    def _write_all(self, data: dict) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(data))
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise StoreUnavailable(f"cannot write {self.path}: {e}") from e

    def read_last_request(self) -> Optional[float]:
        value = self._read_all().get(LAST_REQUEST_KEY)
        return float(value) if value is not None else None

    def write_last_request(self, timestamp: float) -> None:
        self._write_key(LAST_REQUEST_KEY, timestamp)

    def read_daily(self) -> Optional[tuple[str, int]]:
        return self._parse_daily(self._read_all().get(DAILY_KEY))

    @staticmethod
    def _parse_daily(value) -> Optional[tuple[str, int]]:
        if not value:
            return None
        try:
            return str(value["date"]), int(value["count"])
        except (KeyError, TypeError, ValueError) as e:
            raise StoreUnavailable(f"malformed daily entry: {value!r}") from e

    def write_daily(self, day: str, count: int) -> None:
        self._write_key(DAILY_KEY, {"date": day, "count": count})

    def read_state(self) -> RateLimitState:
        data = self._read_all()
        last = data.get(LAST_REQUEST_KEY)
        try:
            state = RateLimitState(last_request_at=float(last) if last is not None else None)
        except (TypeError, ValueError) as e:
            raise StoreUnavailable(f"malformed last request: {last!r}") from e
        daily = self._parse_daily(data.get(DAILY_KEY))
        if daily is not None:
            state.daily_window_date, state.daily_count = daily
        return state

    def record(self, timestamp: float, day: str, count: int) -> None:
        # Both entries land in one replace
        self._write_all({LAST_REQUEST_KEY: timestamp, DAILY_KEY: {"date": day, "count": count}})


class RateLimiter:
    """Per-request cooldown plus a daily quota, persisted across restarts.

    These are cost-control heuristics: if the store is unavailable the
    limiter fails open and lets the request through.
    """

    def __init__(
        self,
        store: RateLimitStore,
        cooldown_seconds: float = COOLDOWN_SECONDS,
        daily_limit: int = DAILY_LIMIT,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.cooldown_seconds = cooldown_seconds
        self.daily_limit = daily_limit
        self.clock = clock
        self._lock = threading.Lock()

    def check_and_reserve(self) -> RateLimitDecision:
        with self._lock:
            try:
                return self._check_and_reserve()
            except (StoreUnavailable, OSError) as e:
                logger.warning("Rate-limit store unavailable, allowing request: {}", e)
                return RateLimitDecision.allow()

    def _check_and_reserve(self) -> RateLimitDecision:
        now = self.clock()
        now_ts = now.timestamp()

        stored = self.store.read_state()
        last = stored.last_request_at
        if last is not None:
            elapsed = now_ts - last
            # A clock that moved backwards does not count as "too soon"
            if 0 <= elapsed < self.cooldown_seconds:
                logger.info("[LIMIT] Denied: {:.1f}s since last request", elapsed)
                return RateLimitDecision.deny(RateLimited.TOO_SOON)

        today = now.date().isoformat()
        if stored.daily_window_date != today:
            if stored.daily_window_date is not None:
                logger.debug("[LIMIT] Daily window rolled from {} to {}", stored.daily_window_date, today)
            count = 0
        else:
            count = stored.daily_count

        if count >= self.daily_limit:
            logger.info("[LIMIT] Denied: daily quota of {} used", self.daily_limit)
            return RateLimitDecision.deny(RateLimited.QUOTA_EXHAUSTED)

        self.store.record(now_ts, today, count + 1)
        logger.debug("[LIMIT] Allowed ({}/{} today)", count + 1, self.daily_limit)
        return RateLimitDecision.allow()

    def state(self) -> RateLimitState:
        """Current persisted counters (empty if the store is unreadable)."""
        try:
            return self.store.read_state()
        except (StoreUnavailable, OSError):
            return RateLimitState()

    def remaining_today(self, today: Optional[date] = None) -> int:
        state = self.state()
        day = (today or self.clock().date()).isoformat()
        used = state.daily_count if state.daily_window_date == day else 0
        return max(0, self.daily_limit - used)
