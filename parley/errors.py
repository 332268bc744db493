"""
errors.py — one small, explicit error taxonomy for the whole package.

What lives here:
- Typed exceptions for every failure the core expects to see (validation,
  not-found, authorization, crypto, transport). Each one carries a `kind`
  tag and the HTTP status the server boundary should answer with.
- `Result`: a tiny tagged variant for places where failures are a normal
  return state (batch decryption), so callers never need try/except there.
- `error_from_status()`: the client-side inverse of the status mapping.

Notes:
- Expected failures (wrong key, call already gone) are *frequent*; they are
  values to branch on, never crashes.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Optional, Type, TypeVar

T = TypeVar("T")


class ParleyError(Exception):
    """Base class. `kind` is the stable tag; `status` is the HTTP mapping."""
    kind = "error"
    status = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def to_dict(self) -> Dict[str, str]:
        return {"error": self.message, "kind": self.kind}


class ValidationError(ParleyError):
    kind = "validation"
    status = 400


class KeyFormatError(ParleyError):
    """Raised by key import when the encoded key is not what we expect."""
    kind = "key_format"
    status = 400


class AuthenticationError(ParleyError):
    kind = "authentication"
    status = 401


class AuthorizationError(ParleyError):
    kind = "authorization"
    status = 403


class NotFoundError(ParleyError):
    kind = "not_found"
    status = 404


class DecryptionError(ParleyError):
    """Wrong key, corrupted data or a tag that doesn't verify."""
    kind = "decryption"
    status = 422


class EncryptionError(ParleyError):
    kind = "encryption"
    status = 500


class TransportError(ParleyError):
    """The other side of an HTTP call was unreachable or answered 5xx."""
    kind = "transport"
    status = 502


_BY_STATUS: Dict[int, Type[ParleyError]] = {
    400: ValidationError,
    401: AuthenticationError,
    403: AuthorizationError,
    404: NotFoundError,
    422: DecryptionError,
}


def error_from_status(status: int, message: str = "") -> ParleyError:
    """
    Map an HTTP status back to our exception type.
    Anything we don't recognise (5xx, odd 4xx) is treated as transport trouble.
    """
    cls = _BY_STATUS.get(status, TransportError)
    return cls(message or f"HTTP {status}")


# ----------------------------
# Result: explicit ok / error
# ----------------------------

@dataclass(frozen=True)
class Result(Generic[T]):
    """
    Tagged variant: either `ok=True` with `value`, or `ok=False` with `error`.

    Typical usage:
        res = Result.capture(crypto.decrypt, blob, key)
        text = res.value if res.ok else "[cannot decrypt]"
    """
    ok: bool
    value: Optional[T] = None
    error: Optional[ParleyError] = None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: ParleyError) -> "Result[T]":
        return cls(ok=False, error=error)

    @classmethod
    def capture(cls, fn: Callable[..., T], *args: Any, **kwargs: Any) -> "Result[T]":
        """Run `fn` and fold any ParleyError into a failed Result."""
        try:
            return cls.success(fn(*args, **kwargs))
        except ParleyError as exc:
            return cls.failure(exc)

    @property
    def kind(self) -> Optional[str]:
        return self.error.kind if self.error is not None else None

    def unwrap(self) -> T:
        """Return the value or re-raise the stored error."""
        if not self.ok:
            raise self.error
        return self.value
