"""
server.py — the HTTP boundary: key exchange + call signaling over aiohttp.

Endpoints (all JSON, all behind a bearer token except /health):

  GET    /conversations/{id}/keys        does this user have a key here?
  POST   /conversations/{id}/keys        store a wrapped key (self or a peer)
  DELETE /conversations/{id}/keys        rotate: wipe every wrapped copy
  PUT    /users/me/public-key            publish an identity public key
  GET    /users/{id}/public-key          fetch someone's identity key

  POST   /calls/initiate | accept | reject | end
  GET    /calls/incoming                 ringing calls for the caller (poll)
  GET    /calls/status/{callId}
  POST   /calls/ice-candidate            relayed to the other peer
  POST   /calls/description              SDP offer/answer, relayed
  GET    /calls/signals/{callId}         drain relayed signals (poll)
  GET    /calls/config                   ICE servers + poll interval

Errors: any ParleyError becomes {"error", "kind"} with its status; anything
unexpected is logged with a traceback and answered with a bare 500.
"""

import logging
import time
from typing import Any, Callable, Dict, Optional

from aiohttp import web

from .auth import verify_token
from .calls import CallCoordinator, CallStore, InMemoryCallStore
from .config import Settings
from .conversation_keys import (
    ConversationDirectory,
    ConversationKeyRepository,
    InMemoryConversationDirectory,
    PublicKeyDirectory,
)
from .errors import (
    AuthenticationError,
    AuthorizationError,
    NotFoundError,
    ParleyError,
    ValidationError,
)
from . import signals

logger = logging.getLogger(__name__)

SETTINGS = web.AppKey("settings", Settings)
COORDINATOR = web.AppKey("coordinator", CallCoordinator)
KEY_RECORDS = web.AppKey("key_records", ConversationKeyRepository)
DIRECTORY = web.AppKey("directory", ConversationDirectory)
PUBLIC_KEYS = web.AppKey("public_keys", PublicKeyDirectory)

PUBLIC_PATHS = frozenset({"/health"})


# -------------------------
# Middlewares
# -------------------------

@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except ParleyError as exc:
        if exc.status >= 500:
            logger.error("%s %s failed: %s", request.method, request.path, exc)
        return web.json_response(exc.to_dict(), status=exc.status)
    except web.HTTPException:
        raise
    except Exception:
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        return web.json_response({"error": "Internal server error", "kind": "error"}, status=500)


@web.middleware
async def auth_middleware(request: web.Request, handler):
    if request.path in PUBLIC_PATHS:
        return await handler(request)
    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        raise AuthenticationError("Missing token")
    settings = request.app[SETTINGS]
    user_id = verify_token(header[7:], settings.secret_key, settings.token_max_age)
    if user_id is None:
        raise AuthenticationError("Invalid or expired token")
    request["user_id"] = user_id
    return await handler(request)


# -------------------------
# Helpers
# -------------------------

async def _json_body(request: web.Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Invalid JSON") from None
    if not isinstance(body, dict):
        raise ValidationError("JSON body must be an object")
    return body


def _optional_str(body: Dict[str, Any], name: str) -> Optional[str]:
    value = body.get(name)
    if value is not None and not isinstance(value, str):
        raise ValidationError(f"{name} must be a string")
    return value


def _call_id(body: Dict[str, Any]) -> Optional[str]:
    return _optional_str(body, "callId")


def _participants_or_raise(request: web.Request, conversation_id: str):
    participants = request.app[DIRECTORY].participants(conversation_id)
    if participants is None:
        raise NotFoundError("Conversation not found")
    if request["user_id"] not in participants:
        raise AuthorizationError("Access denied")
    return participants


# -------------------------
# Conversations + keys
# -------------------------

async def health(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok"})


async def create_conversation(request: web.Request) -> web.Response:
    """Dev helper for the in-memory directory: start a conversation with peers."""
    body = await _json_body(request)
    others = body.get("participants") or []
    if not isinstance(others, list) or not all(isinstance(p, str) and p for p in others):
        raise ValidationError("participants must be a list of user ids")
    members = sorted(set(others) | {request["user_id"]})
    conversation_id = request.app[DIRECTORY].create(members)
    return web.json_response({"conversationId": conversation_id, "participants": members}, status=201)


async def get_keys(request: web.Request) -> web.Response:
    conversation_id = request.match_info["conversation_id"]
    participants = _participants_or_raise(request, conversation_id)
    record = request.app[KEY_RECORDS].get_or_create(conversation_id)
    mine = record.get_participant_key(request["user_id"])

    out: Dict[str, Any] = {
        "hasKey": mine is not None,
        "conversationId": conversation_id,
        "participants": sorted(participants),
        "keyHolders": sorted(record.participant_keys),
        "rotatedAt": record.to_dict()["rotatedAt"],
    }
    if mine is not None:
        out["encryptedKey"] = mine.encrypted_key
        out["encryptionMethod"] = mine.encryption_method
    return web.json_response(out)


async def post_keys(request: web.Request) -> web.Response:
    conversation_id = request.match_info["conversation_id"]
    body = await _json_body(request)
    encrypted_key = body.get("encryptedKey")
    if not encrypted_key or not isinstance(encrypted_key, str):
        raise ValidationError("Encrypted key is required")
    method = _optional_str(body, "encryptionMethod") or "password"

    participants = _participants_or_raise(request, conversation_id)
    user_id = request["user_id"]
    target = _optional_str(body, "userId") or user_id
    if target not in participants:
        raise ValidationError("userId is not a participant in this conversation")

    record = request.app[KEY_RECORDS].get_or_create(conversation_id)
    if target != user_id and record.has_key(target):
        # peers may hand out a first key, never replace someone's existing one
        raise AuthorizationError("That participant already has a key")
    record.set_participant_key(target, encrypted_key, method)
    logger.info("Stored %s key for %s in conversation %s (by %s)", method, target, conversation_id, user_id)
    return web.json_response({"success": True, "message": "Key stored successfully"}, status=201)


async def rotate_keys(request: web.Request) -> web.Response:
    conversation_id = request.match_info["conversation_id"]
    _participants_or_raise(request, conversation_id)
    record = request.app[KEY_RECORDS].get_or_create(conversation_id)
    record.rotate()
    logger.info("Conversation %s keys rotated by %s", conversation_id, request["user_id"])
    return web.json_response({"success": True, "rotatedAt": record.to_dict()["rotatedAt"]})


async def put_public_key(request: web.Request) -> web.Response:
    body = await _json_body(request)
    public_key = _optional_str(body, "publicKey")
    if not public_key:
        raise ValidationError("publicKey is required")
    request.app[PUBLIC_KEYS].publish(request["user_id"], public_key)
    return web.json_response({"success": True})


async def get_public_key(request: web.Request) -> web.Response:
    user_id = request.match_info["user_id"]
    key = request.app[PUBLIC_KEYS].get(user_id)
    if key is None:
        raise NotFoundError("No public key for that user")
    return web.json_response({"userId": user_id, "publicKey": key})


# -------------------------
# Calls
# -------------------------

async def calls_initiate(request: web.Request) -> web.Response:
    body = await _json_body(request)
    call = await request.app[COORDINATOR].initiate(
        request["user_id"], body.get("otherUserId"), body.get("callType")
    )
    return web.json_response({
        "callId": call.call_id,
        "message": "Call initiated",
        "callType": call.call_type.value,
    })


async def calls_accept(request: web.Request) -> web.Response:
    body = await _json_body(request)
    call = await request.app[COORDINATOR].accept(_call_id(body), request["user_id"])
    return web.json_response({
        "callId": call.call_id,
        "message": "Call accepted",
        "callType": call.call_type.value,
    })


async def calls_reject(request: web.Request) -> web.Response:
    body = await _json_body(request)
    await request.app[COORDINATOR].reject(_call_id(body), request["user_id"])
    return web.json_response({"message": "Call rejected"})


async def calls_end(request: web.Request) -> web.Response:
    body = await _json_body(request)
    await request.app[COORDINATOR].end(_call_id(body), request["user_id"])
    return web.json_response({"message": "Call ended"})


async def calls_incoming(request: web.Request) -> web.Response:
    calls = await request.app[COORDINATOR].list_incoming(request["user_id"])
    return web.json_response({"calls": [c.to_dict() for c in calls]})


async def calls_status(request: web.Request) -> web.Response:
    call = await request.app[COORDINATOR].get_status(request.match_info["call_id"], request["user_id"])
    return web.json_response({"call": call.to_dict()})


async def calls_ice_candidate(request: web.Request) -> web.Response:
    body = await _json_body(request)
    if body.get("candidate") is None:
        raise ValidationError("candidate is required")
    env = await request.app[COORDINATOR].relay_signal(
        _call_id(body), request["user_id"], signals.ICE_CANDIDATE,
        {"candidate": body["candidate"]}, _optional_str(body, "msgId"),
    )
    return web.json_response({"message": "ICE candidate received", "relayed": env is not None})


async def calls_description(request: web.Request) -> web.Response:
    body = await _json_body(request)
    kind = body.get("type")
    if kind not in (signals.OFFER, signals.ANSWER):
        raise ValidationError("type must be 'offer' or 'answer'")
    if not body.get("sdp"):
        raise ValidationError("sdp is required")
    env = await request.app[COORDINATOR].relay_signal(
        _call_id(body), request["user_id"], kind,
        {"type": kind, "sdp": body["sdp"]}, _optional_str(body, "msgId"),
    )
    return web.json_response({"message": "Description received", "relayed": env is not None})


async def calls_signals(request: web.Request) -> web.Response:
    pending = await request.app[COORDINATOR].drain_signals(request.match_info["call_id"], request["user_id"])
    return web.json_response({"signals": pending})


async def calls_config(request: web.Request) -> web.Response:
    settings = request.app[SETTINGS]
    return web.json_response({
        "iceServers": [{"urls": url} for url in settings.ice_servers],
        "pollInterval": settings.poll_interval,
        "ringTimeout": settings.ring_timeout,
    })


# -------------------------
# App factory
# -------------------------

def create_app(
    settings: Optional[Settings] = None,
    store: Optional[CallStore] = None,
    directory: Optional[ConversationDirectory] = None,
    clock: Callable[[], float] = time.time,
) -> web.Application:
    """
    Build the application. With no store given, PARLEY_REDIS_URL picks Redis;
    otherwise calls live in this process only.

    Only the call registry is shared through Redis. Relayed offers, answers
    and ICE candidates stay in this process, so both peers of a call must
    poll the same instance (sticky routing) when several are running.
    """
    settings = settings or Settings.from_env()
    settings.warn_if_insecure()

    if store is None:
        if settings.redis_url:
            from .redis_store import RedisCallStore
            store = RedisCallStore.from_url(settings.redis_url)
            logger.info("Using Redis call store")
            logger.warning(
                "Signal relay is per-process; route both peers of a call to the same instance"
            )
        else:
            store = InMemoryCallStore()
            logger.info("Using in-memory call store (single instance only)")

    app = web.Application(middlewares=[error_middleware, auth_middleware])
    app[SETTINGS] = settings
    app[COORDINATOR] = CallCoordinator(store, ring_timeout=settings.ring_timeout, clock=clock)
    app[KEY_RECORDS] = ConversationKeyRepository()
    app[DIRECTORY] = directory if directory is not None else InMemoryConversationDirectory()
    app[PUBLIC_KEYS] = PublicKeyDirectory()

    r = app.router
    r.add_get("/health", health)
    if isinstance(app[DIRECTORY], InMemoryConversationDirectory):
        r.add_post("/conversations", create_conversation)
    r.add_get("/conversations/{conversation_id}/keys", get_keys)
    r.add_post("/conversations/{conversation_id}/keys", post_keys)
    r.add_delete("/conversations/{conversation_id}/keys", rotate_keys)
    r.add_put("/users/me/public-key", put_public_key)
    r.add_get("/users/{user_id}/public-key", get_public_key)
    r.add_post("/calls/initiate", calls_initiate)
    r.add_post("/calls/accept", calls_accept)
    r.add_post("/calls/reject", calls_reject)
    r.add_post("/calls/end", calls_end)
    r.add_get("/calls/incoming", calls_incoming)
    r.add_get("/calls/status/{call_id}", calls_status)
    r.add_post("/calls/ice-candidate", calls_ice_candidate)
    r.add_post("/calls/description", calls_description)
    r.add_get("/calls/signals/{call_id}", calls_signals)
    r.add_get("/calls/config", calls_config)

    async def _cleanup(app: web.Application) -> None:
        await app[COORDINATOR].close()
        await app[COORDINATOR].store.close()

    app.on_cleanup.append(_cleanup)
    return app
