from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping


ENV_HOST = "CHATRELAY_HOST"
ENV_PORT = "CHATRELAY_PORT"
ENV_DB_PATH = "CHATRELAY_DB_PATH"
ENV_PING_INTERVAL_S = "CHATRELAY_PING_INTERVAL_S"
ENV_PING_MISS_LIMIT = "CHATRELAY_PING_MISS_LIMIT"
ENV_MAX_MSG_SIZE = "CHATRELAY_MAX_MSG_SIZE"
ENV_OUTBOUND_QUEUE_SIZE = "CHATRELAY_OUTBOUND_QUEUE_SIZE"
ENV_LOG_LEVEL = "CHATRELAY_LOG_LEVEL"

DEFAULT_MAX_MSG_SIZE = 4 * 1024 * 1024

_LOG_LEVELS = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8080
    db_path: str | None = None
    ping_interval_s: int = 30
    ping_miss_limit: int = 2
    max_msg_size: int = DEFAULT_MAX_MSG_SIZE
    outbound_queue_size: int = 1000
    log_level: str = "INFO"


def _parse_int(env: Mapping[str, str], name: str, default: int, *, minimum: int = 0) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be at least {minimum}")
    return parsed


def _parse_log_level(env: Mapping[str, str], name: str, default: str) -> str:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    level = raw.strip().upper()
    if level not in _LOG_LEVELS:
        raise ValueError(f"{name} must be one of {', '.join(sorted(_LOG_LEVELS))}")
    return level


def load_config_from_env(env: Mapping[str, str] | None = None) -> ServerConfig:
    env = os.environ if env is None else env
    defaults = ServerConfig()
    return ServerConfig(
        host=env.get(ENV_HOST) or defaults.host,
        port=_parse_int(env, ENV_PORT, defaults.port, minimum=1),
        db_path=env.get(ENV_DB_PATH) or None,
        ping_interval_s=_parse_int(env, ENV_PING_INTERVAL_S, defaults.ping_interval_s, minimum=1),
        ping_miss_limit=_parse_int(env, ENV_PING_MISS_LIMIT, defaults.ping_miss_limit),
        max_msg_size=_parse_int(env, ENV_MAX_MSG_SIZE, defaults.max_msg_size, minimum=1),
        outbound_queue_size=_parse_int(env, ENV_OUTBOUND_QUEUE_SIZE, defaults.outbound_queue_size, minimum=1),
        log_level=_parse_log_level(env, ENV_LOG_LEVEL, defaults.log_level),
    )
