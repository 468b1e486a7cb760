from enum import Enum

from pydantic_settings import BaseSettings


class Env(Enum):
    local = "local"
    dev = "dev"
    prod = "prod"


class Config(BaseSettings):
    env: Env = Env.local
    api_url: str = "http://localhost:5000"
    db_url: str = "sqlite+aiosqlite:///foodjourney.db"
    # Seconds.
    health_interval: float = 30
    health_timeout: float = 5
    request_timeout: float = 15
    drain_on_start: bool = True
    log_level: str = "INFO"
