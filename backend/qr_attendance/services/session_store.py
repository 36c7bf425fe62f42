"""In-memory registry of issued attendance sessions."""
import logging
import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CourseSnapshot:
    """Course code, name and section captured when the session was issued."""
    code: str = ''
    name: str = ''
    section: str = ''

    def to_dict(self) -> Dict[str, str]:
        return {'code': self.code, 'name': self.name, 'section': self.section}


@dataclass(frozen=True)
class IssuanceContext:
    issuer_id: str
    issuer_role: str
    institution_id: str
    course_id: str
    course: CourseSnapshot = field(default_factory=CourseSnapshot)
    origin_ip: str = ''


@dataclass(frozen=True)
class Session:
    """One QR issuance event. Valid while ``issued_at <= now < expires_at``."""
    session_id: str
    issued_at: datetime
    expires_at: datetime
    issuer_id: str
    issuer_role: str
    institution_id: str
    course_id: str
    course: CourseSnapshot
    origin_ip: str = ''

    def is_valid_at(self, now: datetime) -> bool:
        return self.issued_at <= now < self.expires_at


class SessionStore:
    """Thread-safe session registry with lazy eviction and a background reaper.

    Sessions live only in process memory; losing them on restart is fine
    because each one is valid for a couple of minutes at most.
    """

    def __init__(self, ttl_seconds: int = 90, reap_interval_seconds: int = 30,
                 clock: Optional[Clock] = None):
        self.ttl = timedelta(seconds=ttl_seconds)
        self.reap_interval = reap_interval_seconds
        self.clock = clock or utc_now
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._reaper: Optional[threading.Thread] = None

    def init_app(self, app) -> None:
        """Configure from the Flask app and start the reaper when enabled."""
        self.ttl = timedelta(seconds=app.config['QR_SESSION_TTL_SECONDS'])
        self.reap_interval = app.config['SESSION_REAP_INTERVAL_SECONDS']
        app.extensions['session_store'] = self
        if app.config.get('SESSION_REAPER_ENABLED', True):
            self.start_reaper()

    @staticmethod
    def generate_session_id() -> str:
        """256 bits from the OS CSPRNG, URL safe."""
        return secrets.token_urlsafe(32)

    def create(self, context: IssuanceContext) -> Session:
        """Register a fresh session for ``context``."""
        issued_at = self.clock()
        with self._lock:
            session_id = self.generate_session_id()
            while session_id in self._sessions:
                session_id = self.generate_session_id()

            session = Session(
                session_id=session_id,
                issued_at=issued_at,
                expires_at=issued_at + self.ttl,
                issuer_id=context.issuer_id,
                issuer_role=context.issuer_role,
                institution_id=context.institution_id,
                course_id=context.course_id,
                course=context.course,
                origin_ip=context.origin_ip
            )
            self._sessions[session_id] = session
        return session

    def lookup(self, session_id: str) -> Optional[Session]:
        """Return the live session or None; expired entries are evicted."""
        if not session_id:
            return None
        now = self.clock()
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            if now >= session.expires_at:
                del self._sessions[session_id]
                return None
        return session if session.is_valid_at(now) else None

    def reap(self) -> int:
        """Remove every expired session, returning how many were dropped."""
        now = self.clock()
        with self._lock:
            expired = [sid for sid, s in self._sessions.items() if now >= s.expires_at]
            for sid in expired:
                del self._sessions[sid]
        if expired:
            logger.debug('Reaped %d expired sessions', len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def _run_reaper(self) -> None:
        while not self._stop.wait(self.reap_interval):
            try:
                self.reap()
            except Exception:
                logger.exception('Session reaper failed')

    def start_reaper(self) -> None:
        if self._reaper is not None and self._reaper.is_alive():
            return
        self._stop.clear()
        self._reaper = threading.Thread(
            target=self._run_reaper, name='session-reaper', daemon=True
        )
        self._reaper.start()

    def stop_reaper(self) -> None:
        self._stop.set()
        if self._reaper is not None:
            self._reaper.join(timeout=self.reap_interval + 1)
            self._reaper = None
