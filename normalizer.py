"""
Response Normalizer Module

Maps the engine's inspect and list payloads onto ContainerInfo. Missing or
malformed fields degrade to empty values; they never abort normalization.
"""

import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from models import (
    ZERO_TIME,
    ContainerInfo,
    EndpointSettings,
    HostConfigInfo,
    MountInfo,
    NetworkInfo,
    PortMapping,
    RestartPolicyInfo,
)

# RFC 3339 with up to nanosecond precision, as the engine emits it
_TIMESTAMP = re.compile(
    r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})?$"
)


def parse_timestamp(value: Optional[str]) -> datetime:
    """Parse an engine timestamp, returning ZERO_TIME when it can't."""
    if not value:
        return ZERO_TIME
    match = _TIMESTAMP.match(value.strip())
    if not match:
        return ZERO_TIME
    base, fraction, offset = match.groups()
    text = base
    if fraction:
        text += "." + fraction[:6].ljust(6, "0")
    if not offset or offset == "Z":
        offset = "+00:00"
    try:
        return datetime.fromisoformat(text + offset)
    except ValueError:
        return ZERO_TIME


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _strip_name(name: str) -> str:
    return name[1:] if name.startswith("/") else name


def split_port_key(key: str):
    """Split ``"3000/tcp"`` into (3000, "tcp"); a bare port is tcp."""
    port, _, protocol = key.partition("/")
    return _int(port), protocol or "tcp"


def normalize_ports(ports: Optional[Dict[str, Any]]) -> List[PortMapping]:
    mappings = []
    for key, bindings in (ports or {}).items():
        private_port, protocol = split_port_key(key)
        # Exposed but unpublished ports have no bindings
        for binding in bindings or []:
            mappings.append(
                PortMapping(
                    private_port=private_port,
                    public_port=_int(binding.get("HostPort")),
                    type=protocol,
                    ip=binding.get("HostIp") or "",
                )
            )
    mappings.sort(key=lambda p: (p.private_port, p.type, p.ip))
    return mappings


def normalize_mounts(mounts: Optional[List[Dict[str, Any]]]) -> List[MountInfo]:
    return [
        MountInfo(
            type=m.get("Type") or "",
            source=m.get("Source") or "",
            destination=m.get("Destination") or "",
            mode=m.get("Mode") or "",
            rw=bool(m.get("RW")),
        )
        for m in mounts or []
    ]


def normalize_network(settings: Optional[Dict[str, Any]]) -> NetworkInfo:
    settings = settings or {}
    networks = {}
    for name, endpoint in (settings.get("Networks") or {}).items():
        endpoint = endpoint or {}
        networks[name] = EndpointSettings(
            ip_address=endpoint.get("IPAddress") or "",
            gateway=endpoint.get("Gateway") or "",
            mac_address=endpoint.get("MacAddress") or "",
            network_id=endpoint.get("NetworkID") or "",
            aliases=list(endpoint.get("Aliases") or []),
        )
    return NetworkInfo(
        networks=networks,
        ip_address=settings.get("IPAddress") or "",
        gateway=settings.get("Gateway") or "",
        mac_address=settings.get("MacAddress") or "",
    )


def normalize_host_config(host_config: Optional[Dict[str, Any]]) -> HostConfigInfo:
    host_config = host_config or {}
    policy = host_config.get("RestartPolicy") or {}
    return HostConfigInfo(
        network_mode=host_config.get("NetworkMode") or "",
        restart_policy=RestartPolicyInfo(
            name=policy.get("Name") or "",
            maximum_retry_count=_int(policy.get("MaximumRetryCount")),
        ),
        auto_remove=bool(host_config.get("AutoRemove")),
        memory=_int(host_config.get("Memory")),
        cpu_shares=_int(host_config.get("CpuShares")),
        cpu_quota=_int(host_config.get("CpuQuota")),
        cpu_period=_int(host_config.get("CpuPeriod")),
    )


def normalize_inspect(payload: Dict[str, Any]) -> ContainerInfo:
    """Build ContainerInfo from a full inspect payload"""
    config = payload.get("Config") or {}
    state = payload.get("State") or {}
    network = payload.get("NetworkSettings") or {}
    host_config = payload.get("HostConfig") or {}
    status = state.get("Status") or ""

    # The engine only fills NetworkSettings.Ports while the container runs
    ports = normalize_ports(network.get("Ports"))
    if not ports:
        ports = normalize_ports(host_config.get("PortBindings"))

    return ContainerInfo(
        id=payload.get("Id") or "",
        name=_strip_name(payload.get("Name") or ""),
        image=config.get("Image") or "",
        image_id=payload.get("Image") or "",
        command=" ".join(config.get("Cmd") or []),
        state=status,
        status=status,
        created=parse_timestamp(payload.get("Created")),
        started=parse_timestamp(state.get("StartedAt")),
        finished=parse_timestamp(state.get("FinishedAt")),
        exit_code=_int(state.get("ExitCode")),
        restart_count=_int(payload.get("RestartCount")),
        platform=payload.get("Platform") or "",
        size_rw=_int(payload.get("SizeRw")),
        size_root_fs=_int(payload.get("SizeRootFs")),
        labels=dict(config.get("Labels") or {}),
        ports=ports,
        mounts=normalize_mounts(payload.get("Mounts")),
        network_settings=normalize_network(network),
        host_config=normalize_host_config(host_config),
    )


def normalize_list_entry(entry: Dict[str, Any]) -> ContainerInfo:
    """Build ContainerInfo from one entry of the engine's list response.

    List entries are summaries: no start/finish times, mounts carry only
    what the engine lists, and the host config holds just the network mode.
    """
    names = entry.get("Names") or []
    created = _int(entry.get("Created"))
    ports = [
        PortMapping(
            private_port=_int(p.get("PrivatePort")),
            public_port=_int(p.get("PublicPort")),
            type=p.get("Type") or "tcp",
            ip=p.get("IP") or "",
        )
        for p in entry.get("Ports") or []
    ]
    ports.sort(key=lambda p: (p.private_port, p.type, p.ip))

    return ContainerInfo(
        id=entry.get("Id") or "",
        name=_strip_name(names[0]) if names else "",
        image=entry.get("Image") or "",
        image_id=entry.get("ImageID") or "",
        command=entry.get("Command") or "",
        state=entry.get("State") or "",
        status=entry.get("Status") or "",
        created=(
            datetime.fromtimestamp(created, tz=timezone.utc) if created else ZERO_TIME
        ),
        labels=dict(entry.get("Labels") or {}),
        ports=ports,
        mounts=normalize_mounts(entry.get("Mounts")),
        network_settings=normalize_network(entry.get("NetworkSettings")),
        host_config=HostConfigInfo(
            network_mode=(entry.get("HostConfig") or {}).get("NetworkMode") or ""
        ),
        size_rw=_int(entry.get("SizeRw")),
        size_root_fs=_int(entry.get("SizeRootFs")),
    )
