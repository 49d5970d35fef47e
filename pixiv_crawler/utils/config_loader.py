import os
from typing import Any, Dict, List, Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from pixiv_crawler.credentials import (
    DEFAULT_ACCEPT_LANGUAGE,
    DEFAULT_REFERER,
    DEFAULT_USER_AGENT,
    CredentialProfile,
)
from pixiv_crawler.utils.env_loader import load_environment


CONFIG_FILE_VARIABLE = "PIXIV_CRAWLER_CONFIG"

DEFAULT_CRON_JOBS: Dict[str, str] = {
    "* * * * *": "detail-info",
    "*/5 * * * *": "recommend-tasks",
    "*/10 * * * *": "home-recommend",
    "0 1 * * *": "daily-ranking",
    "0 1 * * 1": "weekly-ranking",
    "0 1 1 * *": "monthly-ranking",
}

DEFAULT_JOB_INTERVALS: Dict[str, int] = {
    "detail-info": 60,
    "recommend-tasks": 300,
    "home-recommend": 600,
    "daily-ranking": 86_400,
}


class Config(BaseSettings):
    database_url: Optional[str] = None
    credential_profiles: List[CredentialProfile] = Field(default_factory=list)

    request_delay_min_ms: int = 0
    request_delay_max_ms: int = 1000
    max_requests_per_credential: int = 300
    request_timeout: float = 30.0

    popularity_threshold: float = 0.22
    task_popularity_threshold: float = 0.18
    max_illustrations: int = 1000
    recommend_target_num: int = 30
    ranking_pid_cap: int = 200

    worker_endpoints: List[str] = Field(default_factory=list)
    primary_endpoint: Optional[str] = None
    dispatch_timeout: float = 30.0
    min_task_popularity: Optional[float] = None
    detail_info_rounds: int = 1
    detail_info_round_delay: float = 15.0
    home_sample_size: int = 10
    home_target_num: int = 100
    cron_jobs: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_CRON_JOBS))
    job_intervals: Dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_JOB_INTERVALS))

    node_id: Optional[str] = None
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    metrics_port: int = 8000
    log_level: str = "INFO"
    log_path: str = "/data/logs/pixiv_crawler.log"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def primary(self) -> Optional[str]:
        if self.primary_endpoint:
            return self.primary_endpoint
        return self.worker_endpoints[0] if self.worker_endpoints else None


def _config_path() -> str:
    explicit = os.getenv(CONFIG_FILE_VARIABLE)
    if explicit:
        return explicit
    return os.path.join(os.path.dirname(__file__), "../config/config.yaml")


def _load_yaml_config() -> Dict[str, Any]:
    config_path = _config_path()
    if not os.path.exists(config_path):
        return {}

    with open(config_path, "r") as f:
        return yaml.safe_load(f) or {}


def _cookie_profile() -> Optional[CredentialProfile]:
    cookie = os.getenv("PIXIV_COOKIE")
    if not cookie:
        return None
    return CredentialProfile(
        cookie=cookie,
        user_agent=os.getenv("PIXIV_USER_AGENT") or DEFAULT_USER_AGENT,
        referer=os.getenv("PIXIV_REFERER") or DEFAULT_REFERER,
        accept_language=os.getenv("PIXIV_ACCEPT_LANGUAGE") or DEFAULT_ACCEPT_LANGUAGE,
    )


def load_config() -> Config:
    load_environment()
    file_data = _load_yaml_config()
    crawler_settings: Dict[str, Any] = file_data.get("crawler") or {}

    # Environment wins over the config file.
    overrides = {
        key: value
        for key, value in crawler_settings.items()
        if key.upper() not in os.environ
    }
    config = Config(**overrides)

    cookie_profile = _cookie_profile()
    if cookie_profile is not None and cookie_profile not in config.credential_profiles:
        config.credential_profiles = [*config.credential_profiles, cookie_profile]

    return config
