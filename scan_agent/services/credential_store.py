"""
Credential store for host system authentication

Holds either a username/password pair or an imported cookie jar, plus the
active authentication mode. Cookie jars can be imported from three textual
encodings:

- JSON array of browser-extension style cookie objects
- Netscape ``cookies.txt`` export (7 tab-separated fields)
- ``name=value`` lines

Switching the active mode bumps ``revision`` so that a session that captured
credentials under the other mode can detect it has been invalidated.
"""

import json
import logging
import os
import re
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from filelock import FileLock

from ..exceptions import CookieParseError
from ..models.credentials import (
    AuthMode, CookieEntry, CookieJar, CredentialSet, PasswordCredentials, expiry_from_timestamp
)

NETSCAPE_FIELD_COUNT = 7
HTTP_ONLY_PREFIX = "#HttpOnly_"
COOKIE_NAME_PATTERN = re.compile(r"^[^\s=;,\"{}\[\]]+$")


def _parse_json_cookies(raw: str, default_domain: str) -> List[CookieEntry]:
    text = raw.strip()
    if not text or text[0] not in "[{":
        return []
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return []

    if isinstance(data, dict):
        data = data.get("cookies", [])
    if not isinstance(data, list):
        return []

    entries = []
    for item in data:
        if not isinstance(item, dict) or not item.get("name"):
            continue
        try:
            entries.append(CookieEntry.from_dict(item, default_domain))
        except (TypeError, ValueError, OverflowError, OSError):
            continue
    return entries


def _parse_netscape_cookies(raw: str, default_domain: str) -> List[CookieEntry]:
    entries = []
    for line in raw.splitlines():
        http_only = False
        if line.startswith(HTTP_ONLY_PREFIX):
            line = line[len(HTTP_ONLY_PREFIX):]
            http_only = True
        elif not line.strip() or line.lstrip().startswith("#"):
            continue

        parts = line.rstrip("\r\n").split("\t")
        if len(parts) < NETSCAPE_FIELD_COUNT:
            continue

        domain, _flag, path, secure, expiry, name = (p.strip() for p in parts[:6])
        value = "\t".join(parts[6:]).strip()
        if not name:
            continue

        try:
            expires_at = expiry_from_timestamp(expiry)
        except (ValueError, OverflowError, OSError):
            continue

        entries.append(CookieEntry(
            name=name,
            value=value,
            domain=domain or default_domain,
            path=path or "/",
            secure=secure.upper() == "TRUE",
            http_only=http_only,
            expires_at=expires_at,
        ))
    return entries


def _parse_key_value_cookies(raw: str, default_domain: str) -> List[CookieEntry]:
    entries = []
    for line in raw.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue

        name, value = line.split("=", 1)
        name = name.strip()
        if not COOKIE_NAME_PATTERN.match(name):
            continue

        entries.append(CookieEntry(name=name, value=value.strip(), domain=default_domain))
    return entries


COOKIE_PARSERS = (
    ("json", _parse_json_cookies),
    ("netscape", _parse_netscape_cookies),
    ("name=value", _parse_key_value_cookies),
)


def parse_cookie_text(raw: str, default_domain: str = "") -> List[CookieEntry]:
    """
    Extract cookie entries from any of the supported encodings

    Args:
        raw: Imported text
        default_domain: Domain assigned to entries that carry none

    Returns:
        Entries from the first encoding that yields any

    Raises:
        CookieParseError: If no encoding yields an entry
    """
    if raw is None or not raw.strip():
        raise CookieParseError("input is empty")

    for _, parser in COOKIE_PARSERS:
        entries = parser(raw, default_domain)
        if entries:
            return entries

    raise CookieParseError("no cookies found in JSON, Netscape or name=value format")


def expired_count(entries: List[CookieEntry], now: Optional[datetime] = None) -> int:
    """Number of entries whose expiry is strictly in the past"""
    return CookieJar(list(entries)).expired_count(now)


class CredentialStore:
    """Persisted credential set with a single active authentication mode"""

    def __init__(self, path: Optional[Path] = None, default_domain: str = ""):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.path = Path(path) if path else None
        self.default_domain = default_domain

        self.mode: AuthMode = AuthMode.PASSWORD
        self.revision = 0
        self._password: Optional[PasswordCredentials] = None
        self._cookies = CookieJar()

        self.on_mode_changed: Optional[Callable[[AuthMode], None]] = None

        if self.path and self.path.exists():
            self._load()

    def get_active(self) -> Optional[CredentialSet]:
        """Credential set for the active mode, or None if nothing is configured"""
        if self.mode == AuthMode.COOKIES:
            return self._cookies if len(self._cookies) > 0 else None
        return self._password

    def has_credentials(self) -> bool:
        return self.get_active() is not None

    def validate_cookie_jar_text(self, raw: str) -> List[CookieEntry]:
        return parse_cookie_text(raw, self.default_domain)

    def set_password(self, username: str, secret: str):
        """Store a username/password pair and make it the active mode"""
        self._password = PasswordCredentials(username.strip(), secret)
        self._switch_mode(AuthMode.PASSWORD)
        self._save()

    def set_cookies(self, entries: List[CookieEntry]):
        """Store an imported cookie jar and make it the active mode"""
        if not entries:
            raise CookieParseError("cookie jar is empty")
        self._cookies = CookieJar(list(entries))
        self._switch_mode(AuthMode.COOKIES)
        self._save()

    def import_cookie_text(self, raw: str) -> CookieJar:
        """Validate imported text and activate the resulting cookie jar"""
        entries = self.validate_cookie_jar_text(raw)
        self.set_cookies(entries)

        expired = self._cookies.expired_count()
        if expired:
            self.logger.warning(f"Imported {len(entries)} cookies, {expired} already expired")
        else:
            self.logger.info(f"Imported {len(entries)} cookies")
        return self._cookies

    def set_mode(self, mode: AuthMode):
        self._switch_mode(mode)
        self._save()

    def clear(self):
        """Forget all credentials"""
        self._password = None
        self._cookies = CookieJar()
        self.revision += 1
        self._save()

    def _switch_mode(self, mode: AuthMode):
        if mode == self.mode:
            return
        self.mode = mode
        self.revision += 1
        self.logger.info(f"Authentication mode switched to {mode.value}")
        if self.on_mode_changed:
            self.on_mode_changed(mode)

    def _load(self):
        data = json.loads(self.path.read_text(encoding="utf-8")) or {}

        self.mode = AuthMode(data.get("mode", AuthMode.PASSWORD.value))

        password = data.get("password")
        if password and password.get("username"):
            self._password = PasswordCredentials(password["username"], password.get("secret", ""))

        cookies = data.get("cookies") or []
        self._cookies = CookieJar([CookieEntry.from_dict(c, self.default_domain) for c in cookies])

    def _save(self):
        if not self.path:
            return

        data = {
            "mode": self.mode.value,
            "password": (
                {"username": self._password.username, "secret": self._password.secret}
                if self._password else None
            ),
            "cookies": [entry.to_dict() for entry in self._cookies.entries],
        }

        self.path.parent.mkdir(parents=True, exist_ok=True)
        with FileLock(str(self.path) + ".lock"):
            self.path.write_text(json.dumps(data, indent=2), encoding="utf-8")
            # Holds the password and session cookies in clear text
            os.chmod(self.path, 0o600)
