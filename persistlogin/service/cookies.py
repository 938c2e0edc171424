from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, NamedTuple, Optional

from starlette.responses import Response

from persistlogin.service.errors import MalformedCookie

_SEPARATOR = ":"
# user ids are BIGINT
_MAX_USER_ID = 2**63 - 1
_MAX_USER_ID_DIGITS = len(str(_MAX_USER_ID))


class CookiePayload(NamedTuple):
    user_id: int
    series_id: str
    public_key: str


class CookieCodec:
    """Wire format of the persistent-login cookie: ``user:series:public``."""

    @staticmethod
    def encode(user_id: int, series_id: str, public_key: str) -> str:
        return _SEPARATOR.join((str(user_id), series_id, public_key))

    @staticmethod
    def parse(raw: str) -> CookiePayload:
        if not isinstance(raw, str):
            raise MalformedCookie("cookie value is not a string")
        parts = raw.split(_SEPARATOR)
        if len(parts) != 3 or not all(parts):
            raise MalformedCookie(
                "expected user:series:key", detail={"fields": len(parts)}
            )
        user_part, series_id, public_key = parts
        if not (user_part.isascii() and user_part.isdigit()):
            raise MalformedCookie("user id is not numeric")
        user_id = int(user_part) if len(user_part) <= _MAX_USER_ID_DIGITS else None
        if user_id is None or user_id > _MAX_USER_ID:
            raise MalformedCookie("user id is out of range")
        return CookiePayload(user_id, series_id, public_key)

    @classmethod
    def decode(cls, raw: Optional[str]) -> Optional[CookiePayload]:
        """Parse a cookie value, returning None for anything absent or malformed."""
        if not raw:
            return None
        try:
            return cls.parse(raw)
        except MalformedCookie:
            return None


@dataclass
class CookieWrite:
    name: str
    value: str = ""
    max_age: Optional[int] = None
    path: str = "/"
    httponly: bool = True
    secure: bool = False
    samesite: Optional[str] = None
    delete: bool = False


class CookieJar:
    """Incoming cookies for one request plus the writes queued for its response."""

    def __init__(self, incoming: Optional[Mapping[str, str]] = None) -> None:
        self._values: dict[str, str] = dict(incoming or {})
        self.writes: list[CookieWrite] = []

    def get(self, name: str) -> Optional[str]:
        return self._values.get(name)

    def set(
        self,
        name: str,
        value: str,
        *,
        max_age: int,
        path: str = "/",
        httponly: bool = True,
        secure: bool = False,
        samesite: Optional[str] = None,
    ) -> None:
        self._values[name] = value
        self.writes.append(
            CookieWrite(
                name=name,
                value=value,
                max_age=max_age,
                path=path,
                httponly=httponly,
                secure=secure,
                samesite=samesite,
            )
        )

    def clear(self, name: str, *, path: str = "/") -> None:
        self._values.pop(name, None)
        self.writes.append(CookieWrite(name=name, path=path, delete=True))

    def pending(self, name: str) -> Optional[CookieWrite]:
        """Last write queued for ``name`` during this request, if any."""
        for write in reversed(self.writes):
            if write.name == name:
                return write
        return None

    def apply(self, response: Response) -> None:
        # Only the final write per cookie reaches the client
        final: dict[str, CookieWrite] = {}
        for write in self.writes:
            final[write.name] = write
        for write in final.values():
            if write.delete:
                response.delete_cookie(write.name, path=write.path)
                continue
            # None omits SameSite entirely; starlette would otherwise default to lax
            response.set_cookie(
                write.name,
                write.value,
                max_age=write.max_age,
                path=write.path,
                httponly=write.httponly,
                secure=write.secure,
                samesite=write.samesite,
            )


__all__ = ["CookieCodec", "CookieJar", "CookiePayload", "CookieWrite"]
