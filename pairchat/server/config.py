from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

ENV_OVERRIDES = {
    "PAIRCHAT_JWT_SECRET": "jwt_secret",
    "PAIRCHAT_LISTEN": "listen",
    "PAIRCHAT_DB_PATH": "db_path",
}


class ServerConfig(BaseModel):
    listen: str = "0.0.0.0:8081"
    db_path: str = "pairchat.db"
    jwt_secret: str = Field(min_length=1)
    token_ttl_secs: int = 3600
    user_cache_ttl_secs: int = 3600
    chat_cache_ttl_secs: int = 3600
    last_seen_ttl_secs: int = 7 * 24 * 3600
    heartbeat_secs: float = 30.0
    heartbeat_timeout_secs: float = 10.0
    typing_timeout_secs: float = 2.0
    history_limit: int = Field(default=500, gt=0)
    presence_grace_secs: float = 30.0
    close_superseded: bool = True

    @field_validator("listen")
    @classmethod
    def _listen_has_port(cls, value: str) -> str:
        host, sep, port = value.rpartition(":")
        if not sep or not host or not port.isdigit():
            raise ValueError("listen must be host:port")
        return value

    @property
    def host(self) -> str:
        return self.listen.rpartition(":")[0]

    @property
    def port(self) -> int:
        return int(self.listen.rpartition(":")[2])


def load_config(path: Optional[Path] = None, env: Optional[Mapping[str, str]] = None) -> ServerConfig:
    """YAML file (optional) overlaid with PAIRCHAT_* environment variables."""

    data: Dict[str, Any] = {}
    if path is not None:
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path}: top level must be a mapping")
    environ = os.environ if env is None else env
    for var, key in ENV_OVERRIDES.items():
        if environ.get(var):
            data[key] = environ[var]
    return ServerConfig(**data)


__all__ = ["ServerConfig", "load_config"]
