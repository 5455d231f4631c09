import os
from dataclasses import dataclass, field

TRUTHY_VALUES: frozenset[str] = frozenset({"1", "true", "yes", "on"})
FALSY_VALUES: frozenset[str] = frozenset({"0", "false", "no", "off"})

DEFAULT_CONFIG_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), "..", "config")


def _env_var_as_bool(name: str, *, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if not normalized:
        return default
    if normalized in TRUTHY_VALUES:
        return True
    if normalized in FALSY_VALUES:
        return False
    return default


def _env_var_as_float(name: str, *, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = float(raw.strip())
    except ValueError:
        return default
    return value if value >= 0 else default


def _env_var_as_int(name: str, *, default: int, minimum: int = 1) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        return default
    return value if value >= minimum else default


def _parse_env_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    config_dir: str = DEFAULT_CONFIG_DIR
    connect_timeout: float = 10.0
    # Non-streaming calls and the wait for the first upstream event of a stream.
    request_timeout: float = 30.0
    stream_timeout: float = 300.0
    max_attempts: int = 3
    stream_buffer: int = 16
    inbound_api_keys: frozenset[str] = field(default_factory=frozenset)
    api_key_header: str = "x-api-key"
    log_payloads: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            config_dir=os.environ.get("RELAY_CONFIG_DIR", DEFAULT_CONFIG_DIR),
            connect_timeout=_env_var_as_float("RELAY_CONNECT_TIMEOUT", default=10.0),
            request_timeout=_env_var_as_float("RELAY_REQUEST_TIMEOUT", default=30.0),
            stream_timeout=_env_var_as_float("RELAY_STREAM_TIMEOUT", default=300.0),
            max_attempts=_env_var_as_int("RELAY_MAX_ATTEMPTS", default=3),
            stream_buffer=_env_var_as_int("RELAY_STREAM_BUFFER", default=16),
            inbound_api_keys=frozenset(_parse_env_list(os.environ.get("RELAY_INBOUND_API_KEYS", ""))),
            api_key_header=os.environ.get("RELAY_API_KEY_HEADER", "x-api-key"),
            log_payloads=_env_var_as_bool("RELAY_LOG_PAYLOADS"),
        )
