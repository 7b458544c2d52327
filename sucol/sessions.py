"""Session identity for the web console.

Login stores a :class:`SessionIdentity` in the signed session cookie,
logout clears it, and pages only read it through :func:`current_identity`.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Mapping, MutableMapping, Optional

ROLE_ADMIN = "admin"
ROLE_METER_READER = "meter_reader"
ROLE_RESIDENT = "resident"

ROLES = (ROLE_ADMIN, ROLE_METER_READER, ROLE_RESIDENT)

_SESSION_KEY = "identity"


@dataclass(frozen=True)
class SessionIdentity:
    user_id: Optional[int]
    role: str
    token: str = ""
    name: str = ""

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> Optional["SessionIdentity"]:
        role = data.get("role")
        if role not in ROLES:
            return None
        raw_id = data.get("user_id")
        try:
            user_id = int(raw_id) if raw_id is not None else None
        except (TypeError, ValueError):
            return None
        return SessionIdentity(
            user_id=user_id,
            role=str(role),
            token=str(data.get("token") or ""),
            name=str(data.get("name") or ""),
        )


def sign_in(session: MutableMapping[str, Any], identity: SessionIdentity) -> None:
    session.clear()
    session[_SESSION_KEY] = asdict(identity)


def sign_out(session: MutableMapping[str, Any]) -> None:
    session.clear()


def current_identity(session: Mapping[str, Any]) -> Optional[SessionIdentity]:
    raw = session.get(_SESSION_KEY)
    if not isinstance(raw, Mapping):
        return None
    return SessionIdentity.from_dict(raw)


__all__ = [
    "ROLES",
    "ROLE_ADMIN",
    "ROLE_METER_READER",
    "ROLE_RESIDENT",
    "SessionIdentity",
    "current_identity",
    "sign_in",
    "sign_out",
]
