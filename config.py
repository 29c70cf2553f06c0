"""
Configuration Module

Settings are read once at start-up: an optional YAML file first, then
environment variables on top, then validation. The resulting Settings value
is passed explicitly to whatever needs it.
"""

import os
import re
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from models import RESTART_POLICIES, is_network_mode


class ConfigError(Exception):
    """Configuration could not be loaded or is invalid"""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"configuration error for {field}: {message}")


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8080
    # read_timeout bounds idle keep-alive connections; uvicorn has no write
    # deadline, so write_timeout is validated but not applied
    read_timeout: float = 30.0
    write_timeout: float = 30.0
    shutdown_timeout: float = 10.0
    api_token: str = ""
    log_level: str = "INFO"
    json_logs: bool = True
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    rate_limit: str = "120/minute"
    rate_limit_enabled: bool = True


class DockerSettings(BaseModel):
    host: str = "unix:///var/run/docker.sock"
    api_version: str = "1.41"
    tls_verify: bool = False
    cert_path: str = ""
    timeout: int = 60


class ContainerDefaults(BaseModel):
    cpu_shares: int = 1024
    memory_limit: int = 512000000
    network_mode: str = "bridge"
    restart_policy: str = "unless-stopped"
    base_image: str = "node:18-alpine"
    default_port: str = "3000"
    required_deps: List[str] = Field(default_factory=list)


class Settings(BaseModel):
    server: ServerSettings = Field(default_factory=ServerSettings)
    docker: DockerSettings = Field(default_factory=DockerSettings)
    container: ContainerDefaults = Field(default_factory=ContainerDefaults)


# YAML files use camelCase keys (readTimeout, apiVersion ...)
_YAML_KEYS = {
    "readTimeout": "read_timeout",
    "writeTimeout": "write_timeout",
    "shutdownTimeout": "shutdown_timeout",
    "apiToken": "api_token",
    "logLevel": "log_level",
    "jsonLogs": "json_logs",
    "corsOrigins": "cors_origins",
    "rateLimit": "rate_limit",
    "rateLimitEnabled": "rate_limit_enabled",
    "apiVersion": "api_version",
    "tlsVerify": "tls_verify",
    "certPath": "cert_path",
    "cpuShares": "cpu_shares",
    "memoryLimit": "memory_limit",
    "networkMode": "network_mode",
    "restartPolicy": "restart_policy",
    "baseImage": "base_image",
    "defaultPort": "default_port",
    "requiredDeps": "required_deps",
}

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600}


def parse_duration(value: Any) -> float:
    """Seconds from a number or a Go style duration ("30s", "1m30s", "500ms")"""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    text = str(value).strip()
    try:
        return float(text)
    except ValueError:
        pass
    parts = _DURATION_PART.findall(text)
    if not parts or "".join(n + u for n, u in parts) != text:
        raise ValueError(f"invalid duration {value!r}")
    return sum(float(n) * _DURATION_UNITS[u] for n, u in parts)


def parse_bool(value: str) -> bool:
    text = value.strip().lower()
    if text in ("1", "t", "true", "yes", "on"):
        return True
    if text in ("0", "f", "false", "no", "off"):
        return False
    raise ValueError(f"invalid boolean {value!r}")


def _csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


# env var -> (section, field, parser)
ENV_VARS: Dict[str, tuple] = {
    "SERVER_HOST": ("server", "host", str),
    "SERVER_PORT": ("server", "port", int),
    "SERVER_READ_TIMEOUT": ("server", "read_timeout", parse_duration),
    "SERVER_WRITE_TIMEOUT": ("server", "write_timeout", parse_duration),
    "SERVER_SHUTDOWN_TIMEOUT": ("server", "shutdown_timeout", parse_duration),
    "API_TOKEN": ("server", "api_token", str),
    "LOG_LEVEL": ("server", "log_level", str),
    "LOG_JSON": ("server", "json_logs", parse_bool),
    "CORS_ORIGINS": ("server", "cors_origins", _csv),
    "RATE_LIMIT": ("server", "rate_limit", str),
    "DOCKER_HOST": ("docker", "host", str),
    "DOCKER_API_VERSION": ("docker", "api_version", str),
    "DOCKER_TLS_VERIFY": ("docker", "tls_verify", parse_bool),
    "DOCKER_CERT_PATH": ("docker", "cert_path", str),
    "DOCKER_TIMEOUT": ("docker", "timeout", int),
    "CONTAINER_CPU_SHARES": ("container", "cpu_shares", int),
    "CONTAINER_MEMORY_LIMIT": ("container", "memory_limit", int),
    "CONTAINER_NETWORK_MODE": ("container", "network_mode", str),
    "CONTAINER_RESTART_POLICY": ("container", "restart_policy", str),
    "CONTAINER_BASE_IMAGE": ("container", "base_image", str),
}

_DURATION_FIELDS = ("read_timeout", "write_timeout", "shutdown_timeout")


def _normalize_section(section: str, raw: Any) -> Dict[str, Any]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(section, "expected a mapping")
    values = {}
    for key, value in raw.items():
        field = _YAML_KEYS.get(key, key)
        if field in _DURATION_FIELDS:
            try:
                value = parse_duration(value)
            except ValueError as e:
                raise ConfigError(f"{section}.{key}", str(e))
        values[field] = value
    return values


def _load_file(path: str) -> Dict[str, Dict[str, Any]]:
    if not os.path.exists(path):
        raise ConfigError("config", f"config file does not exist: {path}")
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError("config", f"failed to read config file: {e}")
    if not isinstance(data, dict):
        raise ConfigError("config", "top level of the config file must be a mapping")
    return {
        section: _normalize_section(section, data.get(section))
        for section in ("server", "docker", "container")
    }


def _apply_env(values: Dict[str, Dict[str, Any]], environ: Mapping[str, str]):
    for name, (section, field, parse) in ENV_VARS.items():
        if name not in environ:
            continue
        try:
            values[section][field] = parse(environ[name])
        except ValueError as e:
            raise ConfigError(name, str(e))


def validate(settings: Settings) -> Settings:
    checks: List[tuple] = [
        ("Server.Port", 1 <= settings.server.port <= 65535, "port must be between 1 and 65535"),
        ("Server.ReadTimeout", settings.server.read_timeout > 0, "must be positive"),
        ("Server.WriteTimeout", settings.server.write_timeout > 0, "must be positive"),
        ("Docker.Host", bool(settings.docker.host), "cannot be empty"),
        ("Docker.APIVersion", bool(settings.docker.api_version), "cannot be empty"),
        ("Docker.Timeout", settings.docker.timeout > 0, "must be positive"),
        (
            "Docker.CertPath",
            not settings.docker.tls_verify or bool(settings.docker.cert_path),
            "required when tlsVerify is enabled",
        ),
        ("Container.DefaultCPUShares", settings.container.cpu_shares >= 0, "must be non-negative"),
        ("Container.DefaultMemoryLimit", settings.container.memory_limit >= 0, "must be non-negative"),
        (
            "Container.DefaultNetworkMode",
            is_network_mode(settings.container.network_mode),
            "invalid network mode",
        ),
        (
            "Container.DefaultRestartPolicy",
            settings.container.restart_policy in RESTART_POLICIES,
            "invalid restart policy",
        ),
    ]
    for field, ok, message in checks:
        if not ok:
            raise ConfigError(field, message)
    return settings


def load_settings(
    path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None
) -> Settings:
    """Build Settings from an optional YAML file overlaid with env vars"""
    environ = os.environ if environ is None else environ
    values: Dict[str, Dict[str, Any]] = {"server": {}, "docker": {}, "container": {}}
    if path:
        values.update(_load_file(path))
    _apply_env(values, environ)

    try:
        settings = Settings(
            server=ServerSettings(**values["server"]),
            docker=DockerSettings(**values["docker"]),
            container=ContainerDefaults(**values["container"]),
        )
    except ValidationError as e:
        error = e.errors()[0]
        field = ".".join(str(part) for part in error.get("loc", ())) or "config"
        raise ConfigError(field, error.get("msg", str(e)))
    return validate(settings)
