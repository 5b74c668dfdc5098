"""
Credential data models for authenticating against the host system
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Union

# 9999-12-31T23:59:59Z; larger epoch values are taken as milliseconds
MAX_EPOCH_SECONDS = 253402300799


def expiry_from_timestamp(value) -> Optional[datetime]:
    """
    Cookie expiry from an epoch timestamp in seconds or milliseconds

    Returns None for session cookies (zero or negative values).

    Raises:
        ValueError, OverflowError, OSError: If the value is not a usable timestamp
    """
    seconds = float(value)
    if seconds <= 0:
        return None
    if seconds > MAX_EPOCH_SECONDS:
        seconds /= 1000
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


class AuthMode(Enum):
    """Active authentication strategy"""
    PASSWORD = "password"
    COOKIES = "cookies"


@dataclass
class PasswordCredentials:
    """Username/password pair submitted on the host's login form"""
    username: str
    secret: str

    def __post_init__(self):
        if not self.username or not self.username.strip():
            raise ValueError("Username is required")
        if not self.secret:
            raise ValueError("Password is required")

    def __repr__(self):
        return f"PasswordCredentials(username={self.username!r}, secret='***')"


@dataclass
class CookieEntry:
    """A single imported session cookie"""
    name: str
    value: str
    domain: str = ""
    path: str = "/"
    secure: bool = True
    http_only: bool = False
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Cookie carries an expiry strictly in the past"""
        if self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return self.expires_at < now

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "value": self.value,
            "domain": self.domain,
            "path": self.path,
            "secure": self.secure,
            "httpOnly": self.http_only,
            "expirationDate": self.expires_at.timestamp() if self.expires_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict, default_domain: str = "") -> "CookieEntry":
        expiration = data.get("expirationDate", data.get("expires"))
        expires_at = None
        if expiration not in (None, ""):
            expires_at = expiry_from_timestamp(expiration)

        secure = data.get("secure")
        return cls(
            name=str(data["name"]),
            value=str(data.get("value", "")),
            domain=data.get("domain") or default_domain,
            path=data.get("path") or "/",
            secure=secure is not False,
            http_only=bool(data.get("httpOnly", data.get("http_only", False))),
            expires_at=expires_at,
        )


@dataclass
class CookieJar:
    """Imported session cookies"""
    entries: List[CookieEntry] = field(default_factory=list)

    def __len__(self):
        return len(self.entries)

    def expired_count(self, now: Optional[datetime] = None) -> int:
        return sum(1 for entry in self.entries if entry.is_expired(now))


CredentialSet = Union[PasswordCredentials, CookieJar]
