"""
client.py — the client side of the HTTP boundary.

What lives here:
- ApiClient: one aiohttp session + bearer token; turns HTTP errors into our
  typed errors (404 -> NotFoundError, 403 -> AuthorizationError, ...), and
  network trouble or 5xx into TransportError.
- KeyExchangeClient: the key-exchange collaborator EncryptionManager talks to.
- CallClient: thin wrappers over the /calls endpoints.
- IncomingCallPoller: fixed-interval poll of /calls/incoming. No push, no
  backoff: a failed tick is simply tried again on the next one.

Nothing here retries on its own; retry policy belongs to whoever drives it.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
from urllib.parse import quote

import aiohttp

from .errors import NotFoundError, TransportError, error_from_status

logger = logging.getLogger(__name__)


def _seg(value: str) -> str:
    """Quote one path segment (ids may contain anything)."""
    return quote(str(value), safe="")


class ApiClient:
    """
    Usage:
        async with ApiClient("http://127.0.0.1:8080", token) as api:
            calls = CallClient(api)
            await calls.initiate("bob", "video")
    """

    def __init__(self, base_url: str, token: Optional[str] = None,
                 session: Optional[aiohttp.ClientSession] = None,
                 timeout: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        try:
            async with self._get_session().request(
                method, self.base_url + path, json=body, headers=headers
            ) as resp:
                try:
                    data = await resp.json(content_type=None)
                except ValueError:
                    data = None
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransportError(f"{method} {path}: {exc or type(exc).__name__}") from exc

        if not isinstance(data, dict):
            data = {}
        if status >= 400:
            raise error_from_status(status, data.get("error") or "")
        return data


# -------------------------
# Key exchange
# -------------------------

@dataclass(frozen=True)
class KeyInfo:
    conversation_id: str
    has_key: bool
    encrypted_key: Optional[str] = None
    encryption_method: Optional[str] = None
    participants: Tuple[str, ...] = ()
    key_holders: Tuple[str, ...] = ()

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "KeyInfo":
        return cls(
            conversation_id=str(data.get("conversationId", "")),
            has_key=bool(data.get("hasKey")),
            encrypted_key=data.get("encryptedKey"),
            encryption_method=data.get("encryptionMethod"),
            participants=tuple(data.get("participants") or ()),
            key_holders=tuple(data.get("keyHolders") or ()),
        )


class KeyExchangeClient:

    def __init__(self, api: ApiClient) -> None:
        self.api = api

    async def fetch(self, conversation_id: str) -> KeyInfo:
        data = await self.api.request("GET", f"/conversations/{_seg(conversation_id)}/keys")
        return KeyInfo.from_payload(data)

    async def register(self, conversation_id: str, encrypted_key: str,
                       encryption_method: str = "password",
                       user_id: Optional[str] = None) -> None:
        body: Dict[str, Any] = {"encryptedKey": encrypted_key, "encryptionMethod": encryption_method}
        if user_id is not None:
            body["userId"] = user_id
        await self.api.request("POST", f"/conversations/{_seg(conversation_id)}/keys", body)

    async def rotate(self, conversation_id: str) -> None:
        await self.api.request("DELETE", f"/conversations/{_seg(conversation_id)}/keys")

    async def publish_public_key(self, public_key_b64: str) -> None:
        await self.api.request("PUT", "/users/me/public-key", {"publicKey": public_key_b64})

    async def get_public_key(self, user_id: str) -> Optional[str]:
        try:
            data = await self.api.request("GET", f"/users/{_seg(user_id)}/public-key")
        except NotFoundError:
            return None
        return data.get("publicKey")


# -------------------------
# Call signaling
# -------------------------

class CallClient:

    def __init__(self, api: ApiClient) -> None:
        self.api = api

    async def initiate(self, other_user_id: str, call_type: str = "video") -> Dict[str, Any]:
        return await self.api.request("POST", "/calls/initiate",
                                      {"otherUserId": other_user_id, "callType": call_type})

    async def accept(self, call_id: str) -> Dict[str, Any]:
        return await self.api.request("POST", "/calls/accept", {"callId": call_id})

    async def reject(self, call_id: str) -> None:
        await self.api.request("POST", "/calls/reject", {"callId": call_id})

    async def end(self, call_id: str) -> None:
        await self.api.request("POST", "/calls/end", {"callId": call_id})

    async def incoming(self) -> List[Dict[str, Any]]:
        data = await self.api.request("GET", "/calls/incoming")
        return list(data.get("calls") or [])

    async def status(self, call_id: str) -> Dict[str, Any]:
        data = await self.api.request("GET", f"/calls/status/{_seg(call_id)}")
        return data.get("call") or {}

    async def send_ice_candidate(self, call_id: str, candidate: Any,
                                 msg_id: Optional[str] = None) -> bool:
        body = {"callId": call_id, "candidate": candidate}
        if msg_id:
            body["msgId"] = msg_id
        data = await self.api.request("POST", "/calls/ice-candidate", body)
        return bool(data.get("relayed"))

    async def send_description(self, call_id: str, kind: str, sdp: str) -> bool:
        data = await self.api.request("POST", "/calls/description",
                                      {"callId": call_id, "type": kind, "sdp": sdp})
        return bool(data.get("relayed"))

    async def signals(self, call_id: str) -> List[Dict[str, Any]]:
        data = await self.api.request("GET", f"/calls/signals/{_seg(call_id)}")
        return list(data.get("signals") or [])

    async def config(self) -> Dict[str, Any]:
        return await self.api.request("GET", "/calls/config")


class IncomingCallPoller:
    """
    Polls /calls/incoming every `interval` seconds and calls `on_incoming`
    (sync or async) once per newly seen call.
    """

    def __init__(self, calls: CallClient, on_incoming: Callable[[Dict[str, Any]], Any],
                 interval: float = 2.0) -> None:
        self.calls = calls
        self.on_incoming = on_incoming
        self.interval = interval
        self._seen: Set[str] = set()
        self._task: Optional["asyncio.Task[None]"] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def poll_once(self) -> List[Dict[str, Any]]:
        current = await self.calls.incoming()
        fresh = [c for c in current if c.get("callId") not in self._seen]
        # only remember what's still ringing; ids are never reused
        self._seen = {c.get("callId") for c in current}
        for call in fresh:
            result = self.on_incoming(call)
            if inspect.isawaitable(result):
                await result
        return fresh

    async def _run(self) -> None:
        while True:
            try:
                await self.poll_once()
            except TransportError as exc:
                logger.debug("Incoming-call poll failed, retrying next tick: %s", exc)
            except Exception:
                logger.exception("Incoming-call poll raised; retrying next tick")
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.ensure_future(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
