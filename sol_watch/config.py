from __future__ import annotations

from dataclasses import dataclass, fields
import types
import typing
from typing import Any, get_args, get_origin

ENV_PREFIX = "SOL_WATCH_"


class ConfigError(ValueError):
    pass


def _parse_bool(value: str) -> bool:
    val = str(value).strip().lower()
    if val in {"1", "true", "yes", "y", "on"}:
        return True
    if val in {"0", "false", "no", "n", "off"}:
        return False
    raise ValueError(f"invalid bool: {value}")


def _parse_number(value: str, target_type: type) -> Any:
    if target_type is int:
        return int(value)
    if target_type is float:
        return float(value)
    return value


def _unwrap_optional(field_type: Any) -> tuple[Any, bool]:
    origin = get_origin(field_type)
    union_type = getattr(types, "UnionType", None)
    if origin not in (typing.Union, union_type):
        if isinstance(field_type, str) and field_type.endswith(" | None"):
            return field_type[: -len(" | None")], True
        return field_type, False
    args = get_args(field_type)
    if args and type(None) in args and len(args) == 2:
        base = args[0] if args[1] is type(None) else args[1]
        return base, True
    return field_type, False


def _is_field_type(field_type: Any, expected: type, expected_name: str) -> bool:
    base_type, _is_optional = _unwrap_optional(field_type)
    if base_type is expected:
        return True
    if isinstance(base_type, str) and base_type == expected_name:
        return True
    return False


def _parse_optional(raw: str, target_type: Any) -> Any:
    text = str(raw).strip()
    if text == "":
        return None
    lower = text.lower()
    if lower in {"none", "null"}:
        return None
    if target_type in (bool, "bool"):
        return _parse_bool(text)
    if target_type in (int, "int"):
        return int(text)
    if target_type in (float, "float"):
        return float(text)
    return text


def coerce_field(field_type: Any, raw: Any) -> Any:
    """Turn an env or CLI string into the value a ``Config`` field expects."""
    base_type, is_optional = _unwrap_optional(field_type)
    if is_optional:
        return _parse_optional(raw, base_type)
    if isinstance(raw, bool):
        return raw
    if _is_field_type(field_type, bool, "bool"):
        return _parse_bool(raw)
    if _is_field_type(field_type, int, "int"):
        return _parse_number(raw, int)
    if _is_field_type(field_type, float, "float"):
        return _parse_number(raw, float)
    return raw


@dataclass
class Config:
    rpc_ws_url: str = ""
    rpc_http_url: str = ""
    commitment: str = "confirmed"
    stream_commitment: str = "processed"
    venues: str = "orca,raydium,meteora-cpamm,meteora-dammv1,humidifi"
    orca_pools: str = ""
    raydium_pools: str = ""
    meteora_cpamm_pools: str = ""
    meteora_dammv1_pools: str = ""
    humidifi_pools: str = ""
    rest_timeout: float = 10.0
    rpc_max_in_flight: int = 16
    resolve_max_attempts: int = 2
    resolve_retry_delay_seconds: float = 0.15
    reconnect_max: int = 5
    reconnect_base_delay_seconds: float = 1.0
    reconnect_cap_delay_seconds: float = 30.0
    ws_ping_interval_seconds: float = 20.0
    ws_ping_timeout_seconds: float = 20.0
    ws_user_agent: str = "sol_watch"
    keepalive_interval_seconds: float = 30.0
    data_idle_reconnect_seconds: float = 120.0
    subscribe_ack_timeout_seconds: float = 10.0
    seen_max_signatures: int | None = 1_000_000
    inflight_sweep_interval_seconds: float = 300.0
    inflight_max_age_seconds: float = 300.0
    shared_dedup: bool = False
    output_dir: str = "./logs"
    ndjson_fsync_on_close: bool = False
    heartbeat_interval_seconds: float = 30.0
    shutdown_grace_seconds: float = 5.0
    notification_queue_max: int = 10000

    def apply_overrides(self, overrides: dict[str, Any]) -> "Config":
        for field in fields(self):
            name = field.name
            if name in overrides:
                value = overrides[name]
                if value is None:
                    _base_type, is_optional = _unwrap_optional(field.type)
                    if is_optional:
                        setattr(self, name, None)
                    continue
                setattr(self, name, value)
        return self

    @classmethod
    def from_env_and_cli(cls, cli_overrides: dict[str, Any], env: dict[str, str]) -> "Config":
        cfg = cls()
        for field in fields(cfg):
            env_key = ENV_PREFIX + field.name.upper()
            if env_key not in env:
                continue
            setattr(cfg, field.name, coerce_field(field.type, env[env_key]))
        # Explicit CLI flags win over the environment.
        return cfg.apply_overrides(cli_overrides)


def ws_to_http(url: str) -> str:
    text = url.strip()
    lower = text.lower()
    if lower.startswith("wss://"):
        return "https://" + text[len("wss://"):]
    if lower.startswith("ws://"):
        return "http://" + text[len("ws://"):]
    return text


def http_to_ws(url: str) -> str:
    text = url.strip()
    lower = text.lower()
    if lower.startswith("https://"):
        return "wss://" + text[len("https://"):]
    if lower.startswith("http://"):
        return "ws://" + text[len("http://"):]
    return text


def resolve_endpoints(config: Config) -> tuple[str, str]:
    """Return ``(ws_url, http_url)``, deriving whichever one is missing."""
    ws_url = config.rpc_ws_url.strip()
    http_url = config.rpc_http_url.strip()
    if not ws_url and not http_url:
        raise ConfigError(
            f"{ENV_PREFIX}RPC_WS_URL or {ENV_PREFIX}RPC_HTTP_URL is required"
        )
    if not http_url:
        http_url = ws_to_http(ws_url)
    if not ws_url:
        ws_url = http_to_ws(http_url)
    if not ws_url.lower().startswith(("ws://", "wss://")):
        raise ConfigError(f"websocket endpoint must be ws:// or wss://: {ws_url}")
    if not http_url.lower().startswith(("http://", "https://")):
        raise ConfigError(f"http endpoint must be http:// or https://: {http_url}")
    return ws_url, http_url
