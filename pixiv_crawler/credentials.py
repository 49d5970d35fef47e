import threading
from dataclasses import dataclass
from typing import Dict, Sequence

from loguru import logger

from pixiv_crawler.exceptions import ConfigurationError
from pixiv_crawler.monitoring.metrics_server import CREDENTIAL_ROTATIONS


DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:131.0) Gecko/20100101 Firefox/131.0"
)
DEFAULT_REFERER = "https://www.pixiv.net/"
DEFAULT_ACCEPT_LANGUAGE = "zh-CN,zh;q=0.8,zh-TW;q=0.2"


@dataclass(frozen=True)
class CredentialProfile:
    """One complete set of request headers used to present a Pixiv session."""

    cookie: str
    user_agent: str = DEFAULT_USER_AGENT
    referer: str = DEFAULT_REFERER
    accept_language: str = DEFAULT_ACCEPT_LANGUAGE

    def as_headers(self) -> Dict[str, str]:
        return {
            "Cookie": self.cookie,
            "User-Agent": self.user_agent,
            "Referer": self.referer,
            "Accept-Language": self.accept_language,
        }


class CredentialPool:
    """Immutable ring of credential profiles with a lock-guarded cursor.

    One pool may be shared by concurrent callers; ``advance`` is an atomic
    increment so two callers never land on the same slot for one rotation.
    """

    def __init__(self, profiles: Sequence[CredentialProfile], *, log=logger):
        self._profiles = tuple(profiles)
        if not self._profiles:
            raise ConfigurationError("At least one credential profile is required")
        self._index = 0
        self._lock = threading.Lock()
        self.log = log

    def __len__(self) -> int:
        return len(self._profiles)

    @property
    def index(self) -> int:
        return self._index

    def current(self) -> CredentialProfile:
        return self._profiles[self._index]

    def advance(self) -> CredentialProfile:
        with self._lock:
            self._index = (self._index + 1) % len(self._profiles)
            index = self._index
            profile = self._profiles[index]

        CREDENTIAL_ROTATIONS.inc()
        self.log.info(f"Switched to credential profile {index + 1}/{len(self._profiles)}")
        return profile
