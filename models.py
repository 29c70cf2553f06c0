from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# Stand-in for timestamps the engine never set (or sent unparsable)
ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)

NETWORK_MODES = ("bridge", "host", "none")
CONTAINER_NETWORK_PREFIX = "container:"
RESTART_POLICIES = ("no", "always", "unless-stopped", "on-failure")


def is_network_mode(value: str) -> bool:
    """True for bridge, host, none or ``container:<name|id>``"""
    if value in NETWORK_MODES:
        return True
    return value.startswith(CONTAINER_NETWORK_PREFIX) and bool(
        value[len(CONTAINER_NETWORK_PREFIX):]
    )


class ContainerConfig(BaseModel):
    """Application level description of a container to create.

    Accepts camelCase keys (``memoryLimit``) as well as field names.
    ``ports`` maps ``<containerPort>[/<protocol>]`` to a host port, e.g.
    ``{"3000": "3000"}`` or ``{"53/udp": "5353"}``. Empty network mode or
    restart policy leave the engine's default in place.
    """

    model_config = ConfigDict(
        frozen=True, alias_generator=to_camel, populate_by_name=True
    )

    image: str
    command: List[str] = Field(default_factory=list)
    env: List[str] = Field(default_factory=list)
    working_dir: str = ""
    cpu_shares: int = Field(default=0, ge=0)
    memory_limit: int = Field(default=0, ge=0)
    network_mode: str = ""
    restart_policy: str = ""
    restart_max_retries: int = Field(default=0, ge=0)
    labels: Dict[str, str] = Field(default_factory=dict)
    ports: Dict[str, str] = Field(default_factory=dict)

    @field_validator("image")
    @classmethod
    def _image_required(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("image name is required")
        return value

    @field_validator("network_mode")
    @classmethod
    def _known_network_mode(cls, value: str) -> str:
        if not value or is_network_mode(value):
            return value
        raise ValueError(
            "invalid network mode: expected bridge, host, none or container:<id>"
        )

    @field_validator("restart_policy")
    @classmethod
    def _known_restart_policy(cls, value: str) -> str:
        if value and value not in RESTART_POLICIES:
            raise ValueError(
                f"invalid restart policy: expected one of {', '.join(RESTART_POLICIES)}"
            )
        return value


class _Snapshot(BaseModel):
    model_config = ConfigDict(frozen=True)


class PortMapping(_Snapshot):
    private_port: int
    public_port: int = 0
    type: str = "tcp"
    ip: str = ""


class MountInfo(_Snapshot):
    type: str = ""
    source: str = ""
    destination: str = ""
    mode: str = ""
    rw: bool = False


class EndpointSettings(_Snapshot):
    ip_address: str = ""
    gateway: str = ""
    mac_address: str = ""
    network_id: str = ""
    aliases: List[str] = Field(default_factory=list)


class NetworkInfo(_Snapshot):
    networks: Dict[str, EndpointSettings] = Field(default_factory=dict)
    ip_address: str = ""
    gateway: str = ""
    mac_address: str = ""


class RestartPolicyInfo(_Snapshot):
    name: str = ""
    maximum_retry_count: int = 0


class HostConfigInfo(_Snapshot):
    network_mode: str = ""
    restart_policy: RestartPolicyInfo = Field(default_factory=RestartPolicyInfo)
    auto_remove: bool = False
    memory: int = 0
    cpu_shares: int = 0
    cpu_quota: int = 0
    cpu_period: int = 0


class ContainerInfo(_Snapshot):
    """Point-in-time view of one container, built fresh on every call"""

    id: str
    name: str = ""
    image: str = ""
    image_id: str = ""
    command: str = ""
    state: str = ""
    status: str = ""
    created: datetime = ZERO_TIME
    started: datetime = ZERO_TIME
    finished: datetime = ZERO_TIME
    exit_code: int = 0
    restart_count: int = 0
    platform: str = ""
    size_rw: int = 0
    size_root_fs: int = 0
    labels: Dict[str, str] = Field(default_factory=dict)
    ports: List[PortMapping] = Field(default_factory=list)
    mounts: List[MountInfo] = Field(default_factory=list)
    network_settings: NetworkInfo = Field(default_factory=NetworkInfo)
    host_config: HostConfigInfo = Field(default_factory=HostConfigInfo)


class CreateResult(_Snapshot):
    id: str
    warnings: List[str] = Field(default_factory=list)


# API request bodies
class _Request(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateContainerRequest(_Request):
    name: str
    config: ContainerConfig
    start: bool = False


class ProjectContainerRequest(_Request):
    """Create a container from a Node.js project directory.

    ``command`` and ``inject_project_name`` spell out what used to be
    hidden creation defaults: the start command and whether
    ``NODE_PROJECT_NAME=<package name>`` is appended to ``env``.
    Unset resource fields fall back to the configured container defaults.
    """

    project_path: str
    name: str
    env: List[str] = Field(default_factory=list)
    command: List[str] = Field(default_factory=lambda: ["npm", "start"])
    inject_project_name: bool = True
    working_dir: str = "/app"
    image: Optional[str] = None
    cpu_shares: Optional[int] = Field(default=None, ge=0)
    memory_limit: Optional[int] = Field(default=None, ge=0)
    network_mode: Optional[str] = None
    restart_policy: Optional[str] = None
    labels: Dict[str, str] = Field(default_factory=dict)
    ports: Optional[Dict[str, str]] = None
    start: bool = False
