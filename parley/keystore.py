import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Optional, Union

from cryptography.hazmat.primitives.asymmetric import x25519

from . import crypto
from .errors import KeyFormatError

"""
keystore.py — where a client keeps its keys between runs.

Two things are stored, both only on the client:
- One symmetric key per conversation, exported to Base64 and kept in a JSON
  map under "e2e_key_<conversationId>" (same layout the browser client uses
  in localStorage, so the two are easy to compare when debugging).
- One X25519 identity keypair per user, as an unencrypted PKCS#8 PEM file
  (~/.parley/<user>_identity.pem) used to unwrap keys shared with us.

Raw key bytes never leave this module except to the caller.
"""

logger = logging.getLogger(__name__)

KEY_PREFIX = "e2e_key_"


def default_home() -> Path:
    """~/.parley unless PARLEY_HOME says otherwise."""
    return Path(os.environ.get("PARLEY_HOME") or Path.home() / ".parley").expanduser()


class LocalKeyStore:
    """Interface: conversation id -> raw 32-byte key."""

    def get(self, conversation_id: str) -> Optional[bytes]:
        raise NotImplementedError

    def save(self, conversation_id: str, key: bytes) -> None:
        raise NotImplementedError

    def remove(self, conversation_id: str) -> None:
        raise NotImplementedError


class MemoryKeyStore(LocalKeyStore):
    """Dict-backed store; handy for tests and throwaway sessions."""

    def __init__(self) -> None:
        self._keys: Dict[str, bytes] = {}

    def get(self, conversation_id: str) -> Optional[bytes]:
        return self._keys.get(conversation_id)

    def save(self, conversation_id: str, key: bytes) -> None:
        crypto.enforce_key_size(key)
        self._keys[conversation_id] = bytes(key)

    def remove(self, conversation_id: str) -> None:
        self._keys.pop(conversation_id, None)


class FileKeyStore(LocalKeyStore):
    """
    JSON file of exported keys. Every write rewrites the file atomically
    (temp file + os.replace) with 0600 permissions.
    """

    def __init__(self, path: Union[str, Path, None] = None) -> None:
        self.path = Path(path) if path else default_home() / "keys.json"
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Key store %s unreadable, starting empty: %s", self.path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _dump(self, data: Dict[str, str]) -> None:
        fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), prefix=".keys-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, sort_keys=True)
            os.chmod(tmp, 0o600)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def get(self, conversation_id: str) -> Optional[bytes]:
        exported = self._load().get(KEY_PREFIX + conversation_id)
        if exported is None:
            return None
        try:
            return crypto.import_key(exported)
        except KeyFormatError:
            # Treat a mangled entry as missing; the manager will make a new one.
            logger.warning("Ignoring corrupted key entry for conversation %s", conversation_id)
            return None

    def save(self, conversation_id: str, key: bytes) -> None:
        data = self._load()
        data[KEY_PREFIX + conversation_id] = crypto.export_key(key)
        self._dump(data)

    def remove(self, conversation_id: str) -> None:
        data = self._load()
        if data.pop(KEY_PREFIX + conversation_id, None) is not None:
            self._dump(data)


# -----------------------
# Identity keypair on disk
# -----------------------

def identity_path(user_id: str, home: Union[str, Path, None] = None) -> Path:
    base = Path(home) if home else default_home()
    return base / f"{Path(user_id).name}_identity.pem"


def load_or_create_identity(path: Union[str, Path]) -> x25519.X25519PrivateKey:
    """Load the identity key at `path`, generating and saving one if absent."""
    path = Path(path)
    if path.exists():
        with open(path, "rb") as f:
            priv = crypto.load_private_key_pem(f.read())
        logger.debug("Loaded identity key from %s", path)
        return priv

    path.parent.mkdir(parents=True, exist_ok=True)
    priv, _ = crypto.generate_identity_keypair()
    with open(path, "wb") as f:
        f.write(crypto.export_private_key_pem(priv))
    os.chmod(path, 0o600)
    logger.info("Generated new identity key at %s", path)
    return priv
