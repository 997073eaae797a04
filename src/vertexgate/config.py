"""Configuration handling for the vertexgate proxy."""

import yaml
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from .credentials import DEFAULT_BODY_PATTERNS, DEFAULT_MESSAGE_PATTERNS

logger = logging.getLogger(__name__)

access_logger = logging.getLogger("vertexgate.access")

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent.parent / "config.yaml"

DEFAULT_CONFIG: Dict[str, Any] = {
    "server": {"port": 8080},
    "auth": {"api_key": ""},
    "vertex": {
        "api_keys": [],
        "round_robin": False,
        "project_id": "",
        "location": "global",
        "mode": "native",
    },
    "retry": {"max_retries": 3, "interval_ms": 1000, "switch_credential": True},
    "models": {"config_url": "", "file": "vertexModels.json"},
    "network": {"proxy_url": "", "ssl_cert_file": "", "timeout": 120},
    "reasoning": {"tag": "vertex_think_tag"},
    "logging": {"dir": "logs", "level": "INFO"},
}

# (env var, section, key, kind)
ENV_OVERRIDES = [
    ("APP_PORT", "server", "port", "int"),
    ("API_KEY", "auth", "api_key", "str"),
    ("VERTEX_EXPRESS_API_KEY", "vertex", "api_keys", "list"),
    ("ROUNDROBIN", "vertex", "round_robin", "bool"),
    ("GCP_PROJECT_ID", "vertex", "project_id", "str"),
    ("GCP_LOCATION", "vertex", "location", "str"),
    ("UPSTREAM_MODE", "vertex", "mode", "str"),
    ("RETRY_MAX", "retry", "max_retries", "int"),
    ("RETRY_INTERVAL_MS", "retry", "interval_ms", "int"),
    ("RETRY_SWITCH_KEY", "retry", "switch_credential", "bool"),
    ("MODELS_CONFIG_URL", "models", "config_url", "str"),
    ("MODELS_FILE", "models", "file", "str"),
    ("PROXY_URL", "network", "proxy_url", "str"),
    ("SSL_CERT_FILE", "network", "ssl_cert_file", "str"),
    ("LOG_DIR", "logging", "dir", "str"),
    ("LOG_LEVEL", "logging", "level", "str"),
]


class Settings(BaseModel):
    """Validated, flattened runtime settings."""

    port: int = 8080
    api_key: str = ""
    api_keys: List[str] = Field(default_factory=list)
    round_robin: bool = False
    project_id: str = ""
    location: str = "global"
    mode: Literal["native", "openai"] = "native"
    max_retries: int = 3
    retry_interval_ms: int = 1000
    switch_credential: bool = True
    models_config_url: str = ""
    models_file: str = "vertexModels.json"
    proxy_url: str = ""
    ssl_cert_file: str = ""
    timeout: float = 120.0
    reasoning_tag: str = "vertex_think_tag"
    message_patterns: List[str] = Field(
        default_factory=lambda: list(DEFAULT_MESSAGE_PATTERNS)
    )
    body_patterns: List[str] = Field(default_factory=lambda: list(DEFAULT_BODY_PATTERNS))
    log_dir: str = "logs"
    log_level: str = "INFO"


def parse_keys(value: str) -> List[str]:
    """Split a comma-separated credential list, dropping blanks."""
    return [k.strip() for k in value.split(",") if k.strip()]


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes")


def load_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load configuration from a config.yaml file.
    Returns a dictionary containing the configuration, merged over the defaults.
    """
    config_path = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    merged = {section: dict(values) for section, values in DEFAULT_CONFIG.items()}
    try:
        config_yaml = config_path.read_text()
        loaded = yaml.safe_load(config_yaml) or {}
        logger.info(f"Successfully loaded configuration from {config_path}")
    except Exception as e:
        logger.error(f"Error loading {config_path}: {str(e)}")
        return merged

    for section, values in loaded.items():
        if isinstance(values, dict):
            merged.setdefault(section, {}).update(values)
        else:
            merged[section] = values
    return merged


def apply_env_overrides(
    config: Dict[str, Any], environ: Optional[Mapping[str, str]] = None
) -> Dict[str, Any]:
    """Overlay environment variables onto a loaded configuration mapping."""
    if environ is None:
        environ = os.environ
    for env_name, section, key, kind in ENV_OVERRIDES:
        raw = environ.get(env_name, "")
        if raw == "":
            continue
        if kind == "int":
            try:
                value: Any = int(raw)
            except ValueError:
                logger.warning(f"Ignoring non-integer value for {env_name}: {raw!r}")
                continue
        elif kind == "bool":
            value = _parse_bool(raw)
        elif kind == "list":
            value = parse_keys(raw)
        else:
            value = raw
        config.setdefault(section, {})[key] = value
    return config


def settings_from_config(config: Dict[str, Any]) -> Settings:
    vertex = config.get("vertex", {})
    retry = config.get("retry", {})
    models = config.get("models", {})
    network = config.get("network", {})
    discovery = config.get("discovery", {})
    log_settings = config.get("logging", {})

    api_keys = vertex.get("api_keys") or []
    if isinstance(api_keys, str):
        api_keys = parse_keys(api_keys)

    values: Dict[str, Any] = {
        "port": config.get("server", {}).get("port", 8080),
        "api_key": config.get("auth", {}).get("api_key") or "",
        "api_keys": api_keys,
        "round_robin": vertex.get("round_robin", False),
        "project_id": vertex.get("project_id") or "",
        "location": vertex.get("location") or "global",
        "mode": vertex.get("mode") or "native",
        "max_retries": retry.get("max_retries", 3),
        "retry_interval_ms": retry.get("interval_ms", 1000),
        "switch_credential": retry.get("switch_credential", True),
        "models_config_url": models.get("config_url") or "",
        "models_file": models.get("file") or "",
        "proxy_url": network.get("proxy_url") or "",
        "ssl_cert_file": network.get("ssl_cert_file") or "",
        "timeout": network.get("timeout", 120),
        "reasoning_tag": config.get("reasoning", {}).get("tag") or "vertex_think_tag",
        "log_dir": log_settings.get("dir") or "logs",
        "log_level": log_settings.get("level") or "INFO",
    }
    if discovery.get("message_patterns"):
        values["message_patterns"] = discovery["message_patterns"]
    if discovery.get("body_patterns"):
        values["body_patterns"] = discovery["body_patterns"]
    return Settings(**values)


def load_settings(
    path: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None
) -> Settings:
    """Load .env, then config.yaml, then environment overrides."""
    if environ is None:
        load_dotenv()
    config = apply_env_overrides(load_config(path), environ)
    return settings_from_config(config)


def configure_logging(settings: Settings) -> None:
    """Set up root logging and the access log file."""
    logging.basicConfig(level=settings.log_level.upper())

    access_logger.setLevel(logging.INFO)
    access_logger.propagate = True

    log_dir = Path(settings.log_dir)
    try:
        os.makedirs(log_dir, exist_ok=True)
    except OSError as e:
        logger.error(f"Failed to create log directory {log_dir}: {str(e)}")
        return

    access_log_file = log_dir / "access.log"
    for handler in access_logger.handlers:
        if getattr(handler, "baseFilename", None) == os.path.abspath(access_log_file):
            return
    file_handler = logging.FileHandler(str(access_log_file), mode="a")
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")
    )
    access_logger.addHandler(file_handler)
