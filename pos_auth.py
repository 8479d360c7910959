# POS auth: local user accounts and bearer sessions kept in the key/value store
import os
import time
import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from werkzeug.security import check_password_hash, generate_password_hash

from pos_service import is_valid_email
from pos_store import SESSIONS_KEY, USERS_KEY, KeyValueStore

try:
    DEFAULT_SESSION_TTL = int(os.getenv('POS_SESSION_TTL_SECONDS', '86400'))
except ValueError:
    DEFAULT_SESSION_TTL = 86400

RESET_PHRASE = (os.getenv('POS_RESET_PHRASE') or 'shrim').strip()
DEMO_EMAIL = 'demo@shrim.com'
DEMO_PASSWORD = 'demo123'
MIN_PASSWORD_LENGTH = 6

logger = logging.getLogger(__name__)


class AuthError(Exception):
    """Rejected auth request; ``status`` is the HTTP code to answer with."""
    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.message = message
        self.status = status


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in user.items() if k != 'password_hash'}


class AuthService:
    def __init__(self, store: KeyValueStore, session_ttl: int = DEFAULT_SESSION_TTL,
                 reset_phrase: str = RESET_PHRASE, clock: Callable[[], float] = time.time):
        self.store = store
        self.session_ttl = int(session_ttl)
        self.reset_phrase = reset_phrase
        self._clock = clock
        self._lock = threading.Lock()

    # ---------- RECORDS ----------
    def _users(self) -> List[Dict[str, Any]]:
        users = self.store.get(USERS_KEY)
        return users if isinstance(users, list) else []

    def _sessions(self) -> Dict[str, Dict[str, Any]]:
        sessions = self.store.get(SESSIONS_KEY)
        return sessions if isinstance(sessions, dict) else {}

    def _find_user(self, email: str) -> Optional[Dict[str, Any]]:
        wanted = (email or '').strip().lower()
        for user in self._users():
            if str(user.get('email') or '').lower() == wanted:
                return user
        return None

    def _save_user(self, user: Dict[str, Any]):
        users = [u for u in self._users() if u.get('id') != user.get('id')]
        users.append(user)
        self.store.set(USERS_KEY, users)

    def _purge_expired_sessions_locked(self, now_ts: Optional[float] = None) -> Dict[str, Dict[str, Any]]:
        now_ts = now_ts or self._clock()
        sessions = self._sessions()
        expired = [tok for tok, sess in sessions.items() if float(sess.get('expires_at') or 0) <= now_ts]
        for tok in expired:
            sessions.pop(tok, None)
        if expired:
            self.store.set(SESSIONS_KEY, sessions)
            logger.info("Purged %d expired session(s) (active=%d)", len(expired), len(sessions))
        return sessions

    def _create_session(self, user_id: str) -> Dict[str, Any]:
        now_ts = self._clock()
        session = {
            'token': uuid4().hex,
            'user_id': user_id,
            'created_at': now_ts,
            'expires_at': now_ts + self.session_ttl,
        }
        sessions = self._purge_expired_sessions_locked(now_ts)
        sessions[session['token']] = session
        self.store.set(SESSIONS_KEY, sessions)
        return session

    # ---------- OPERATIONS ----------
    def register(self, email: str, password: str, name: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        email = (email or '').strip().lower()
        name = (name or '').strip()
        password = password or ''
        if not email or not password or not name:
            raise AuthError('Email, password and name are required', 400)
        if not is_valid_email(email):
            raise AuthError('Invalid email format', 400)
        if len(password) < MIN_PASSWORD_LENGTH:
            raise AuthError(f'Password must be at least {MIN_PASSWORD_LENGTH} characters', 400)
        with self._lock, self.store.transaction():
            if self._find_user(email):
                raise AuthError('Email already registered', 409)
            user = {
                'id': uuid4().hex,
                'email': email,
                'password_hash': generate_password_hash(password),
                'name': name,
                'created_date': datetime.now().replace(microsecond=0).isoformat(),
                'last_login': None,
            }
            self._save_user(user)
            session = self._create_session(user['id'])
        logger.info("Registered user %s", email)
        return public_user(user), session

    def login(self, email: str, password: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        with self._lock, self.store.transaction():
            user = self._find_user(email)
            if not user or not check_password_hash(user.get('password_hash') or '', password or ''):
                raise AuthError('Invalid email or password', 401)
            user['last_login'] = datetime.now().replace(microsecond=0).isoformat()
            self._save_user(user)
            session = self._create_session(user['id'])
        logger.info("User %s logged in", user['email'])
        return public_user(user), session

    def logout(self, token: Optional[str]) -> bool:
        if not token:
            return False
        with self._lock, self.store.transaction():
            sessions = self._sessions()
            removed = sessions.pop(token, None)
            if removed is None:
                return False
            self.store.set(SESSIONS_KEY, sessions)
        return True

    def current_user(self, token: Optional[str]) -> Optional[Dict[str, Any]]:
        if not token:
            return None
        with self._lock, self.store.transaction():
            session = self._purge_expired_sessions_locked().get(token)
            if not session:
                return None
            for user in self._users():
                if user.get('id') == session.get('user_id'):
                    return public_user(user)
        return None

    def reset_password(self, email: str, new_password: str, security_answer: str) -> bool:
        if (security_answer or '').strip().lower() != self.reset_phrase.lower():
            raise AuthError('Incorrect security answer', 403)
        if len(new_password or '') < MIN_PASSWORD_LENGTH:
            raise AuthError(f'Password must be at least {MIN_PASSWORD_LENGTH} characters', 400)
        with self._lock, self.store.transaction():
            user = self._find_user(email)
            if not user:
                raise AuthError('No account found for that email', 404)
            user['password_hash'] = generate_password_hash(new_password)
            self._save_user(user)
            # existing sessions for the account stop working
            sessions = {tok: s for tok, s in self._sessions().items() if s.get('user_id') != user['id']}
            self.store.set(SESSIONS_KEY, sessions)
        logger.info("Password reset for %s", user['email'])
        return True

    def ensure_demo_user(self) -> bool:
        """Seed the demo account when no users exist yet."""
        if self._users():
            return False
        self.register(DEMO_EMAIL, DEMO_PASSWORD, 'Demo User')
        return True

    def reset(self):
        with self._lock, self.store.transaction():
            self.store.delete(USERS_KEY)
            self.store.delete(SESSIONS_KEY)
