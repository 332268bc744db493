import threading
import time
import uuid
from collections import OrderedDict, deque
from typing import Any, Deque, Dict, List, Optional, Tuple

from .errors import AuthorizationError, ValidationError

"""
signals.py — relay for WebRTC signaling between the two peers of a call.

What this module does:
- Builds a small standard "signal" envelope (ids, sender/recipient, time,
  body) for SDP offers/answers and ICE candidates.
- Queues each signal for the *other* participant of the call, who picks it
  up on their next poll (drain). There is no push channel; polling is enough
  for call setup.
- Drops duplicate msg_ids (a retried POST must not deliver twice) with a
  bounded replay cache per call.

Notes:
- The relay never looks inside the body; SDP and candidates are opaque.
- Queues are bounded; when a peer stops polling, the oldest signals go first.
- Everything for a call is discarded as soon as the call ends.
"""

OFFER = "offer"
ANSWER = "answer"
ICE_CANDIDATE = "ice-candidate"
SIGNAL_KINDS = (OFFER, ANSWER, ICE_CANDIDATE)

SEEN_CACHE_SIZE = 1024


def now_ms() -> int:
    """Current time in milliseconds (used for timestamp_ms)."""
    return int(time.time() * 1000)


def new_signal(
    call_id: str,
    kind: str,
    from_id: str,
    to_id: str,
    body: Optional[Dict[str, Any]] = None,
    msg_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Create a signal envelope. `msg_id` may be supplied by the sender so a
    retried request is recognised as the same signal.
    """
    if kind not in SIGNAL_KINDS:
        raise ValidationError(f"Invalid signal type: {kind}")
    if msg_id is not None and not isinstance(msg_id, str):
        raise ValidationError("msgId must be a string")
    return {
        "msgId": msg_id or str(uuid.uuid4()),
        "callId": call_id,
        "type": kind,
        "from": from_id,
        "to": to_id,
        "timestampMs": now_ms(),
        "body": body or {},
    }


class SignalRelay:
    """
    In-process per-call mailboxes. Callers pass in the current Call record so
    the relay can tell who the counterpart is; it keeps no call state itself.
    """

    def __init__(self, max_pending: int = 256) -> None:
        self.max_pending = max_pending
        self._queues: Dict[Tuple[str, str], Deque[Dict[str, Any]]] = {}
        self._seen: Dict[str, "OrderedDict[str, None]"] = {}
        self._lock = threading.Lock()

    def post(self, call: Any, sender: str, kind: str,
             body: Optional[Dict[str, Any]] = None,
             msg_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Queue a signal for the other side. Returns the envelope, or None when
        it was a duplicate of one already relayed.
        """
        if sender == call.caller_id:
            recipient = call.receiver_id
        elif sender == call.receiver_id:
            recipient = call.caller_id
        else:
            raise AuthorizationError("Not a participant in this call")

        env = new_signal(call.call_id, kind, sender, recipient, body, msg_id)
        with self._lock:
            seen = self._seen.setdefault(call.call_id, OrderedDict())
            if env["msgId"] in seen:
                return None
            seen[env["msgId"]] = None
            if len(seen) > SEEN_CACHE_SIZE:
                seen.popitem(last=False)  # drop the oldest id

            q = self._queues.setdefault((call.call_id, recipient), deque(maxlen=self.max_pending))
            q.append(env)
        return env

    def drain(self, call_id: str, user_id: str) -> List[Dict[str, Any]]:
        """Pop everything waiting for `user_id` on this call (oldest first)."""
        with self._lock:
            q = self._queues.pop((call_id, user_id), None)
        return list(q) if q else []

    def pending(self, call_id: str, user_id: str) -> int:
        with self._lock:
            q = self._queues.get((call_id, user_id))
            return len(q) if q else 0

    def discard(self, call_id: str) -> None:
        """Forget every queue and the replay cache for a finished call."""
        with self._lock:
            for k in [k for k in self._queues if k[0] == call_id]:
                del self._queues[k]
            self._seen.pop(call_id, None)
