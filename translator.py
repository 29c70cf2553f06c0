"""
Config Translator Module

Builds the engine's native container-creation payload (container config with
an embedded host config) from a validated ContainerConfig.
"""

import re
from typing import Any, Dict, Tuple

from errors import InvalidInputError
from models import ContainerConfig

DEFAULT_BIND_IP = "0.0.0.0"
PORT_PROTOCOLS = ("tcp", "udp", "sctp")

_PORT_SPEC = re.compile(r"^(\d{1,5})(?:/([a-z]+))?$")


def _check_port(value: str, what: str) -> int:
    port = int(value)
    if not 1 <= port <= 65535:
        raise InvalidInputError(f"{what} {value} out of range 1-65535")
    return port


def parse_port_spec(spec: str) -> Tuple[int, str]:
    """Parse ``<containerPort>[/<protocol>]`` into (port, protocol).

    The protocol defaults to tcp. Anything else raises InvalidInputError.
    """
    match = _PORT_SPEC.match(spec.strip())
    if not match:
        raise InvalidInputError(f"invalid port specification {spec!r}")
    port = _check_port(match.group(1), "container port")
    protocol = match.group(2) or "tcp"
    if protocol not in PORT_PROTOCOLS:
        raise InvalidInputError(f"unsupported protocol {protocol!r} in {spec!r}")
    return port, protocol


def parse_host_port(value: str) -> str:
    """Validate a host port; an empty string lets the engine pick one."""
    value = value.strip()
    if value == "":
        return value
    if not value.isdigit():
        raise InvalidInputError(f"invalid host port {value!r}")
    return str(_check_port(value, "host port"))


def translate_ports(ports: Dict[str, str]):
    """Expand a port map into the engine's ExposedPorts and PortBindings.

    Every entry binds on 0.0.0.0. The whole map is parsed before anything is
    returned, so one bad entry rejects the lot.
    """
    exposed: Dict[str, Dict] = {}
    bindings: Dict[str, list] = {}
    for container_port, host_port in ports.items():
        port, protocol = parse_port_spec(container_port)
        key = f"{port}/{protocol}"
        exposed[key] = {}
        bindings[key] = [
            {"HostIp": DEFAULT_BIND_IP, "HostPort": parse_host_port(host_port)}
        ]
    return exposed, bindings


def build_host_config(config: ContainerConfig, port_bindings: Dict[str, list]):
    host_config: Dict[str, Any] = {
        "PortBindings": port_bindings,
        "Memory": config.memory_limit,
        "CpuShares": config.cpu_shares,
    }
    if config.network_mode:
        host_config["NetworkMode"] = config.network_mode
    if config.restart_policy:
        policy = {"Name": config.restart_policy}
        if config.restart_policy == "on-failure":
            policy["MaximumRetryCount"] = config.restart_max_retries
        host_config["RestartPolicy"] = policy
    return host_config


def translate(config: ContainerConfig) -> Dict[str, Any]:
    """Return the create request body for ``config``.

    Network mode and restart policy are passed through as given; they were
    checked when the ContainerConfig was built.
    """
    exposed, bindings = translate_ports(config.ports)
    body: Dict[str, Any] = {
        "Image": config.image,
        "Env": list(config.env),
        "Labels": dict(config.labels),
        "ExposedPorts": exposed,
        "HostConfig": build_host_config(config, bindings),
    }
    if config.command:
        body["Cmd"] = list(config.command)
    if config.working_dir:
        body["WorkingDir"] = config.working_dir
    return body
