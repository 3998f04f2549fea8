"""Build a ClientConfig from a JSON file or the environment.

File format::

    {
        "default_model": "gpt-4o",
        "name_template": "Client-{index}",
        "caller_fault_status_codes": [400],
        "timeout": 60,
        "circuit": {"failure_threshold": 3, "timeout": 30, "max_requests": 1, "interval": 0},
        "endpoints": [
            {"api_key": "sk-...", "base_url": "https://a.example/v1",
             "model_map": {"gpt-4o": "gpt-4o-2024-08-06"}, "name": "primary"}
        ]
    }

Environment: ``LB_BASE_URLS`` and ``LB_API_KEYS`` are comma-separated and
paired by position. ``LB_MODEL_MAP`` is a JSON object applied to every
endpoint. ``LB_DEFAULT_MODEL``, ``LB_FAILURE_THRESHOLD`` and
``LB_CIRCUIT_TIMEOUT`` tune the rest.
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from .circuit import CircuitBreakerConfig, trip_on_consecutive_failures
from .client import ClientConfig, EndpointConfig

ENDPOINT_KEYS = {"api_key", "base_url", "model_map", "name"}
CIRCUIT_KEYS = {"failure_threshold", "timeout", "max_requests", "interval"}


class ConfigError(ValueError):
    """Raised when a configuration source is malformed."""


def _parse_model_map(value: Any, where: str) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in value.items()
    ):
        raise ConfigError(f"{where}: model_map must map model names to model names")
    return dict(value)


def _parse_endpoint(data: Any, index: int) -> EndpointConfig:
    where = f"endpoints[{index}]"
    if not isinstance(data, dict):
        raise ConfigError(f"{where}: expected an object")

    unknown = set(data) - ENDPOINT_KEYS
    if unknown:
        raise ConfigError(f"{where}: unknown keys {sorted(unknown)}")
    if not data.get("base_url"):
        raise ConfigError(f"{where}: base_url is required")

    return EndpointConfig(
        api_key=data.get("api_key"),
        base_url=data["base_url"],
        model_map=_parse_model_map(data.get("model_map"), where),
        name=data.get("name"),
    )


def _parse_circuit(data: Any) -> CircuitBreakerConfig:
    if not isinstance(data, dict):
        raise ConfigError("circuit: expected an object")

    unknown = set(data) - CIRCUIT_KEYS
    if unknown:
        raise ConfigError(f"circuit: unknown keys {sorted(unknown)}")

    config = CircuitBreakerConfig()
    try:
        if "failure_threshold" in data:
            config.ready_to_trip = trip_on_consecutive_failures(int(data["failure_threshold"]))
        if "timeout" in data:
            config.timeout = float(data["timeout"])
        if "max_requests" in data:
            config.max_requests = int(data["max_requests"])
        if "interval" in data:
            config.interval = float(data["interval"])
    except (TypeError, ValueError) as e:
        raise ConfigError(f"circuit: {e}") from e

    if config.timeout < 0 or config.max_requests < 1 or config.interval < 0:
        raise ConfigError("circuit: timeout and interval must be >= 0, max_requests >= 1")
    return config


def config_from_dict(data: Mapping[str, Any]) -> ClientConfig:
    """Build a ClientConfig from already-parsed data."""
    endpoints = data.get("endpoints")
    if not isinstance(endpoints, list) or not endpoints:
        raise ConfigError("endpoints: at least one endpoint is required")

    config = ClientConfig(endpoints=[_parse_endpoint(item, i) for i, item in enumerate(endpoints)])

    if "circuit" in data:
        config.circuit_config = _parse_circuit(data["circuit"])
    if data.get("default_model"):
        config.default_model = str(data["default_model"])
    if data.get("name_template"):
        config.name_template = str(data["name_template"])
    if "caller_fault_status_codes" in data:
        try:
            config.caller_fault_status_codes = tuple(int(c) for c in data["caller_fault_status_codes"])
        except (TypeError, ValueError) as e:
            raise ConfigError(f"caller_fault_status_codes: {e}") from e
    if "timeout" in data:
        try:
            config.timeout = float(data["timeout"])
        except (TypeError, ValueError) as e:
            raise ConfigError(f"timeout: {e}") from e

    return config


def load_config(path: Union[str, Path]) -> ClientConfig:
    """Load a ClientConfig from a JSON file."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be an object")
    return config_from_dict(data)


def _split(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def config_from_env(environ: Optional[Mapping[str, str]] = None) -> ClientConfig:
    """Load a ClientConfig from LB_* environment variables."""
    env = os.environ if environ is None else environ

    base_urls = _split(env.get("LB_BASE_URLS", ""))
    if not base_urls:
        raise ConfigError("LB_BASE_URLS is not set")

    api_keys = _split(env.get("LB_API_KEYS", ""))
    if api_keys and len(api_keys) != len(base_urls):
        raise ConfigError(f"LB_API_KEYS has {len(api_keys)} entries for {len(base_urls)} base URLs")

    model_map: Dict[str, str] = {}
    if env.get("LB_MODEL_MAP"):
        try:
            model_map = _parse_model_map(json.loads(env["LB_MODEL_MAP"]), "LB_MODEL_MAP")
        except json.JSONDecodeError as e:
            raise ConfigError(f"LB_MODEL_MAP is not valid JSON: {e}") from e

    data: Dict[str, Any] = {
        "endpoints": [
            {
                "base_url": url,
                "api_key": api_keys[i] if api_keys else None,
                "model_map": model_map,
            }
            for i, url in enumerate(base_urls)
        ]
    }

    circuit: Dict[str, Any] = {}
    if env.get("LB_FAILURE_THRESHOLD"):
        circuit["failure_threshold"] = env["LB_FAILURE_THRESHOLD"]
    if env.get("LB_CIRCUIT_TIMEOUT"):
        circuit["timeout"] = env["LB_CIRCUIT_TIMEOUT"]
    if circuit:
        data["circuit"] = circuit
    if env.get("LB_DEFAULT_MODEL"):
        data["default_model"] = env["LB_DEFAULT_MODEL"]

    return config_from_dict(data)
