"""
encryption.py — per-conversation key lifecycle + message encryption.

What this module does:
- EncryptionManager.ensure_conversation_key(): get *the* key for a
  conversation, in this order: session cache -> local key store -> the
  key-exchange endpoint -> generate a new one. Concurrent callers for the same
  conversation share one in-flight acquisition, so a client never races
  itself into two different keys.
- Outgoing: encrypt text before it is sent; if encryption fails the message
  goes out unencrypted rather than being dropped.
- Incoming: decrypt a batch of messages one by one; a message that can't be
  decrypted is flagged and shown with a marker, the rest still go through.

Key exchange, in short:
- The first participant to need a key generates it and registers a wrapped
  copy for itself ("publicKey" with its identity key, "password" with a shared
  passphrase, or the bare exported key when neither is configured). It then
  hands wrapped copies to the other participants whose public keys are
  published.
- Later participants fetch their copy and unwrap it. If there is no copy for
  them, or it can't be unwrapped, they fall back to a fresh local key; their
  own messages still encrypt, but the others can't read them until keys
  converge (rotate() starts the exchange over).

Error model:
- The exchange is best-effort: any ParleyError from it means "work locally".
- Per-message crypto failures are values (flags/Results), never exceptions.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from cryptography.hazmat.primitives.asymmetric import x25519

from . import crypto
from .errors import DecryptionError, EncryptionError, KeyFormatError, ParleyError, Result
from .keystore import LocalKeyStore

logger = logging.getLogger(__name__)

UNDECRYPTABLE_MARKER = "[Unable to decrypt - key mismatch or corrupted]"


class KeyState(str, enum.Enum):
    NO_KEY = "no_key"
    LOCAL_CACHED = "local_cached"
    FETCHING = "fetching"
    RESOLVED = "resolved"


# -----------------------
# Message shapes (wire names match the chat API)
# -----------------------

@dataclass
class OutgoingMessage:
    content: str
    message_type: str = "text"
    is_encrypted: bool = False
    encrypted_content: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "content": self.content,
            "messageType": self.message_type,
            "isEncrypted": self.is_encrypted,
            "encryptedContent": self.encrypted_content,
        }


@dataclass
class DecryptedMessage:
    content: str
    is_encrypted: bool = False
    encrypted_content: Optional[str] = None
    decrypted_content: Optional[str] = None
    decryption_error: bool = False
    error_kind: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "DecryptedMessage":
        known = {"content", "isEncrypted", "encryptedContent", "decryptedContent", "decryptionError"}
        return cls(
            content=payload.get("content") or "",
            is_encrypted=bool(payload.get("isEncrypted")),
            encrypted_content=payload.get("encryptedContent"),
            extra={k: v for k, v in payload.items() if k not in known},
        )

    def to_payload(self) -> Dict[str, Any]:
        out = dict(self.extra)
        out.update({
            "content": self.content,
            "isEncrypted": self.is_encrypted,
            "encryptedContent": self.encrypted_content,
        })
        if self.decrypted_content is not None:
            out["decryptedContent"] = self.decrypted_content
        if self.decryption_error:
            out["decryptionError"] = True
        return out


# -----------------------
# The manager
# -----------------------

class EncryptionManager:
    """
    One per signed-in client. `exchange` is the key-exchange collaborator
    (see client.KeyExchangeClient); anything with the same coroutine methods
    works: fetch, register, rotate, get_public_key, publish_public_key.
    """

    def __init__(
        self,
        user_id: str,
        store: LocalKeyStore,
        exchange: Any,
        identity: Optional[x25519.X25519PrivateKey] = None,
        password: Optional[str] = None,
    ) -> None:
        self.user_id = user_id
        self.store = store
        self.exchange = exchange
        self.identity = identity
        self.password = password
        self._resolved: Dict[str, bytes] = {}
        self._states: Dict[str, KeyState] = {}
        self._inflight: Dict[str, "asyncio.Task[bytes]"] = {}
        # bumped by forget(); a lookup started under an older value is stale
        self._generations: Dict[str, int] = {}

    # ---- state -------------------------------------------------------

    def state(self, conversation_id: str) -> KeyState:
        return self._states.get(conversation_id, KeyState.NO_KEY)

    def cached_key(self, conversation_id: str) -> Optional[bytes]:
        return self._resolved.get(conversation_id)

    async def publish_identity(self) -> Optional[str]:
        """Publish our identity public key so peers can wrap keys for us."""
        if self.identity is None:
            return None
        pub_b64 = crypto.export_public_key(self.identity.public_key())
        try:
            await self.exchange.publish_public_key(pub_b64)
        except ParleyError as exc:
            logger.warning("Could not publish identity key for %s: %s", self.user_id, exc)
        return pub_b64

    # ---- key acquisition ---------------------------------------------

    async def ensure_conversation_key(self, conversation_id: str) -> bytes:
        """Idempotent; concurrent calls for one conversation share one task."""
        key = self._resolved.get(conversation_id)
        if key is not None:
            return key

        task = self._inflight.get(conversation_id)
        if task is None:
            generation = self._generations.get(conversation_id, 0)
            task = asyncio.ensure_future(self._acquire(conversation_id, generation))
            self._inflight[conversation_id] = task

            def _done(t: "asyncio.Task[bytes]", cid: str = conversation_id) -> None:
                if self._inflight.get(cid) is t:
                    del self._inflight[cid]

            task.add_done_callback(_done)
        # shield: one impatient caller must not cancel everyone else's lookup
        return await asyncio.shield(task)

    def _is_stale(self, conversation_id: str, generation: int) -> bool:
        return self._generations.get(conversation_id, 0) != generation

    async def _restart(self, conversation_id: str) -> bytes:
        logger.debug("Key for %s was rotated mid-lookup; starting over", conversation_id)
        return await self.ensure_conversation_key(conversation_id)

    async def _acquire(self, conversation_id: str, generation: int) -> bytes:
        if self._is_stale(conversation_id, generation):
            return await self._restart(conversation_id)
        stored = self.store.get(conversation_id)
        if stored is not None:
            self._states[conversation_id] = KeyState.LOCAL_CACHED
            return self._resolve(conversation_id, stored)

        self._states[conversation_id] = KeyState.FETCHING
        try:
            info = await self.exchange.fetch(conversation_id)
        except ParleyError as exc:
            if self._is_stale(conversation_id, generation):
                return await self._restart(conversation_id)
            logger.warning(
                "Key exchange unavailable for conversation %s (%s); using a local-only key",
                conversation_id, exc.kind,
            )
            return self._resolve_new(conversation_id)

        if self._is_stale(conversation_id, generation):
            return await self._restart(conversation_id)

        if info.has_key:
            key = self._unwrap(info)
            if key is None:
                logger.warning(
                    "Conversation %s has a key on the server that %s cannot unwrap; "
                    "generating a local key until keys are re-exchanged",
                    conversation_id, self.user_id,
                )
                return self._resolve_new(conversation_id)
            self.store.save(conversation_id, key)
            return self._resolve(conversation_id, key)

        key = self._resolve_new(conversation_id)
        await self._register(conversation_id, key, info, generation)
        return key

    def _resolve(self, conversation_id: str, key: bytes) -> bytes:
        self._resolved[conversation_id] = key
        self._states[conversation_id] = KeyState.RESOLVED
        return key

    def _resolve_new(self, conversation_id: str) -> bytes:
        key = crypto.generate_key()
        self.store.save(conversation_id, key)
        return self._resolve(conversation_id, key)

    def _unwrap(self, info: Any) -> Optional[bytes]:
        blob = info.encrypted_key
        if not blob:
            return None
        try:
            if info.encryption_method == "publicKey":
                if self.identity is None:
                    return None
                return crypto.unwrap_key_with_identity(blob, self.identity)
            if self.password is not None:
                try:
                    return crypto.unwrap_key_with_password(blob, self.password)
                except DecryptionError:
                    pass
            # bare exported key from a client with no passphrase
            return crypto.import_key(blob)
        except (DecryptionError, KeyFormatError) as exc:
            logger.debug("Unwrap failed for %s: %s", info.conversation_id, exc)
            return None

    def _wrap_for_self(self, key: bytes):
        if self.identity is not None:
            return crypto.wrap_key_for_recipient(key, self.identity.public_key()), "publicKey"
        if self.password is not None:
            return crypto.wrap_key_with_password(key, self.password), "password"
        return crypto.export_key(key), "password"

    async def _register(self, conversation_id: str, key: bytes, info: Any, generation: int) -> None:
        blob, method = self._wrap_for_self(key)
        try:
            await self.exchange.register(conversation_id, blob, method)
        except ParleyError as exc:
            logger.warning("Could not register key for conversation %s: %s", conversation_id, exc)
            return

        holders = set(getattr(info, "key_holders", ()) or ())
        for other in getattr(info, "participants", ()) or ():
            if other == self.user_id or other in holders:
                continue
            if self._is_stale(conversation_id, generation):
                return
            await self._distribute(conversation_id, key, other)

    async def _distribute(self, conversation_id: str, key: bytes, other: str) -> None:
        """Best-effort: give `other` a wrapped copy of the key."""
        try:
            pub_b64 = await self.exchange.get_public_key(other)
        except ParleyError:
            pub_b64 = None

        if pub_b64:
            try:
                blob = crypto.wrap_key_for_recipient(key, crypto.import_public_key(pub_b64))
            except KeyFormatError:
                logger.warning("Published key for %s is malformed; skipping", other)
                return
            method = "publicKey"
        elif self.password is not None:
            blob, method = crypto.wrap_key_with_password(key, self.password), "password"
        else:
            logger.debug("No way to wrap the key for %s yet", other)
            return

        try:
            await self.exchange.register(conversation_id, blob, method, user_id=other)
        except ParleyError as exc:
            logger.warning("Could not share key with %s: %s", other, exc)

    # ---- rotation ------------------------------------------------------

    def forget(self, conversation_id: str) -> None:
        """
        Drop the key locally (session cache + store) without telling anyone.
        A lookup still in flight is abandoned: it stores nothing, and its
        waiters get a key acquired afresh.
        """
        self._generations[conversation_id] = self._generations.get(conversation_id, 0) + 1
        self._inflight.pop(conversation_id, None)
        self._resolved.pop(conversation_id, None)
        self._states.pop(conversation_id, None)
        self.store.remove(conversation_id)

    async def rotate(self, conversation_id: str) -> None:
        """Forget the key here and ask the server to clear every wrapped copy."""
        self.forget(conversation_id)
        try:
            await self.exchange.rotate(conversation_id)
        except ParleyError as exc:
            logger.warning("Server-side rotation failed for %s: %s", conversation_id, exc)

    # ---- messages -------------------------------------------------------

    async def encrypt_outgoing(self, conversation_id: str, text: str,
                               message_type: str = "text") -> OutgoingMessage:
        """
        Only text is encrypted. When it is, `content` is left empty so the
        server never stores the plaintext next to the ciphertext.
        """
        msg = OutgoingMessage(content=text, message_type=message_type)
        if message_type != "text" or not text:
            return msg
        key = await self.ensure_conversation_key(conversation_id)
        try:
            msg.encrypted_content = crypto.encrypt(text, key)
        except EncryptionError as exc:
            logger.warning("Sending message unencrypted due to encryption error: %s", exc)
            return msg
        msg.is_encrypted = True
        msg.content = ""
        return msg

    def decrypt_incoming(self, conversation_id: str,
                         messages: Iterable[Mapping[str, Any]],
                         key: Optional[bytes] = None) -> List[DecryptedMessage]:
        """
        Decrypt what we can. A message that fails (including every encrypted
        message when there is no key at all) keeps its own `content` or gets
        the marker, and is flagged with decryption_error=True.
        """
        if key is None:
            key = self._resolved.get(conversation_id) or self.store.get(conversation_id)

        out: List[DecryptedMessage] = []
        failures = 0
        for payload in messages:
            msg = DecryptedMessage.from_payload(payload)
            if msg.is_encrypted and msg.encrypted_content:
                if key is None:
                    res = Result.failure(DecryptionError("No key for this conversation"))
                else:
                    res = Result.capture(crypto.decrypt, msg.encrypted_content, key)
                if res.ok:
                    msg.decrypted_content = res.value
                    msg.content = res.value
                else:
                    failures += 1
                    msg.decryption_error = True
                    msg.error_kind = res.kind
                    msg.decrypted_content = msg.content or UNDECRYPTABLE_MARKER
                    msg.content = msg.decrypted_content
            out.append(msg)

        if failures:
            logger.debug("%d/%d messages in %s could not be decrypted", failures, len(out), conversation_id)
        return out

    # ---- attachments ----------------------------------------------------

    async def encrypt_attachment(self, conversation_id: str, data: bytes) -> bytes:
        key = await self.ensure_conversation_key(conversation_id)
        return crypto.encrypt_bytes(data, key)

    def decrypt_attachment(self, conversation_id: str, blob: bytes) -> "Result[bytes]":
        key = self._resolved.get(conversation_id) or self.store.get(conversation_id)
        if key is None:
            return Result.failure(DecryptionError("No key for this conversation"))
        return Result.capture(crypto.decrypt_bytes, blob, key)
