"""
parley — the security-sensitive core of a chat + calling web app.

Two loosely coupled halves:
- Encryption: per-conversation AES-256-GCM keys held only by clients,
  exchanged through the server as wrapped (opaque) blobs, and used to
  encrypt message text and attachments end to end.
- Call signaling: a small state machine (ringing -> accepted -> gone, with a
  60 second ring timeout) driven by plain HTTP requests and short polling,
  plus a relay for WebRTC offers/answers/ICE candidates. Media itself flows
  peer to peer and never touches this package.

Set PARLEY_SECRET_KEY on every server process before running; see config.py
for the rest of the PARLEY_* settings.
"""
__all__ = [
    "auth",
    "calls",
    "client",
    "config",
    "conversation_keys",
    "crypto",
    "encryption",
    "errors",
    "keystore",
    "redis_store",
    "run",
    "server",
    "signals",
]
