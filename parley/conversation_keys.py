"""
conversation_keys.py — server-side key records for conversations.

The server never sees a usable key. Per conversation it keeps one record
holding, for each participant, an opaque "encrypted key" blob plus a tag
saying how it was wrapped ("password" or "publicKey"). Clients fetch their
own blob and unwrap it locally.

Rules:
- At most one ConversationKey per conversation (created lazily).
- Setting a participant's key overwrites their previous entry, never duplicates.
- rotate() wipes every participant entry, forcing a fresh exchange.

Also here: the two small directories the key endpoints need (who is in a
conversation, and each user's published identity public key). In a full
deployment both are backed by the conversation/user data store.
"""

import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, Optional

from . import crypto
from .errors import ValidationError

ENCRYPTION_METHODS = ("password", "publicKey")


def _iso(ts: float) -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(ts)) + "Z"


@dataclass
class ParticipantKey:
    user_id: str
    encrypted_key: str
    encryption_method: str = "password"

    def __post_init__(self) -> None:
        if self.encryption_method not in ENCRYPTION_METHODS:
            raise ValidationError(f"Invalid encryption method: {self.encryption_method}")
        if not self.encrypted_key:
            raise ValidationError("Encrypted key is required")


@dataclass
class ConversationKey:
    conversation_id: str
    participant_keys: Dict[str, ParticipantKey] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    rotated_at: float = field(default_factory=time.time)

    def set_participant_key(self, user_id: str, encrypted_key: str,
                            encryption_method: str = "password") -> ParticipantKey:
        entry = ParticipantKey(user_id, encrypted_key, encryption_method)
        self.participant_keys[user_id] = entry
        return entry

    def get_participant_key(self, user_id: str) -> Optional[ParticipantKey]:
        return self.participant_keys.get(user_id)

    def has_key(self, user_id: str) -> bool:
        return user_id in self.participant_keys

    def remove_participant_key(self, user_id: str) -> None:
        self.participant_keys.pop(user_id, None)

    def rotate(self, now: Optional[float] = None) -> None:
        self.rotated_at = time.time() if now is None else now
        self.participant_keys.clear()

    def to_dict(self) -> Dict[str, object]:
        return {
            "conversationId": self.conversation_id,
            "participantKeys": [
                {
                    "user": pk.user_id,
                    "encryptedKey": pk.encrypted_key,
                    "encryptionMethod": pk.encryption_method,
                }
                for pk in self.participant_keys.values()
            ],
            "createdAt": _iso(self.created_at),
            "rotatedAt": _iso(self.rotated_at),
        }


class ConversationKeyRepository:
    """In-process record store. Lock-guarded so get_or_create stays unique."""

    def __init__(self) -> None:
        self._records: Dict[str, ConversationKey] = {}
        self._lock = threading.Lock()

    def get(self, conversation_id: str) -> Optional[ConversationKey]:
        with self._lock:
            return self._records.get(conversation_id)

    def get_or_create(self, conversation_id: str) -> ConversationKey:
        with self._lock:
            record = self._records.get(conversation_id)
            if record is None:
                record = ConversationKey(conversation_id)
                self._records[conversation_id] = record
            return record


class ConversationDirectory:
    """Interface onto the conversation store: who takes part in what."""

    def participants(self, conversation_id: str) -> Optional[FrozenSet[str]]:
        raise NotImplementedError


class InMemoryConversationDirectory(ConversationDirectory):

    def __init__(self) -> None:
        self._conversations: Dict[str, FrozenSet[str]] = {}

    def create(self, participants: Iterable[str]) -> str:
        conversation_id = uuid.uuid4().hex
        self.add(conversation_id, participants)
        return conversation_id

    def add(self, conversation_id: str, participants: Iterable[str]) -> None:
        self._conversations[conversation_id] = frozenset(participants)

    def participants(self, conversation_id: str) -> Optional[FrozenSet[str]]:
        return self._conversations.get(conversation_id)


class PublicKeyDirectory:
    """user id -> exported X25519 identity public key (Base64)."""

    def __init__(self) -> None:
        self._keys: Dict[str, str] = {}

    def publish(self, user_id: str, public_key_b64: str) -> None:
        # Fail fast on junk so clients never download an unusable key.
        crypto.import_public_key(public_key_b64)
        self._keys[user_id] = public_key_b64

    def get(self, user_id: str) -> Optional[str]:
        return self._keys.get(user_id)
