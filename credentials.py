# credentials.py
import base64
import logging
import os
import threading

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

SALT_SIZE = 16


# --- Secret Hashing Utilities ---
def _make_kdf(salt: bytes, iterations: int) -> PBKDF2HMAC:
    return PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )


def hash_secret(password: str, iterations: int) -> str:
    """Derive a '<salt>$<digest>' string (both urlsafe base64) from a password."""
    salt = os.urandom(SALT_SIZE)
    digest = _make_kdf(salt, iterations).derive(password.encode('utf-8'))
    return f"{base64.urlsafe_b64encode(salt).decode()}${base64.urlsafe_b64encode(digest).decode()}"


def verify_secret(password: str, stored: str, iterations: int) -> bool:
    try:
        salt_b64, digest_b64 = stored.split('$', 1)
        salt = base64.urlsafe_b64decode(salt_b64)
        digest = base64.urlsafe_b64decode(digest_b64)
    except ValueError:
        return False
    try:
        _make_kdf(salt, iterations).verify(password.encode('utf-8'), digest)
        return True
    except InvalidKey:
        return False
# --- End Secret Hashing Utilities ---


class CredentialStore:
    """
    In-memory username -> secret mapping shared by every session.

    Append/lookup only: there is no way to change or delete an entry.
    Secrets are kept as given unless `hash_passwords` is set.
    """

    def __init__(self, hash_passwords=False, iterations=390000):
        self._secrets = {}
        self._lock = threading.Lock()
        self.hash_passwords = hash_passwords
        self.iterations = iterations

    def exists(self, username):
        with self._lock:
            return username in self._secrets

    def register(self, username, password, on_stored=None):
        """
        Store a new user. Returns False if the username is already taken.

        `on_stored` runs before the store is unlocked, so nothing can look the
        new user up until it has returned.
        """
        # Derive outside the lock, it is slow on purpose.
        secret = hash_secret(password, self.iterations) if self.hash_passwords else password
        with self._lock:
            if username in self._secrets:
                return False
            self._secrets[username] = secret
            if on_stored is not None:
                on_stored()
        logger.info(f"Registered new user '{username}'")
        return True

    def verify(self, username, password):
        """True iff the user exists and the password matches exactly."""
        with self._lock:
            stored = self._secrets.get(username)
        if stored is None:
            return False
        if self.hash_passwords:
            return verify_secret(password, stored, self.iterations)
        return stored == password

    def usernames(self):
        with self._lock:
            return sorted(self._secrets)
