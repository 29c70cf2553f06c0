import struct
from unittest.mock import MagicMock, Mock

import pytest
from docker.errors import APIError, ImageNotFound, NotFound

from engine_client import EngineClient


def make_api_error(status_code, explanation, cls=None):
    """Build a docker SDK error the way the SDK raises it for an HTTP status"""
    if cls is None:
        cls = NotFound if status_code == 404 else APIError
    response = Mock(status_code=status_code, reason="error", url="http+docker://localhost")
    return cls(explanation, response=response, explanation=explanation)


def frame(stream_id, payload):
    return struct.pack(">BxxxL", stream_id, len(payload)) + payload


class FakeLogResponse:
    def __init__(self, raw, chunk_size=5):
        self.raw = raw
        self.chunk_size = chunk_size
        self.closed = False

    def iter_content(self, chunk_size=None):
        for i in range(0, len(self.raw), self.chunk_size):
            yield self.raw[i : i + self.chunk_size]

    def close(self):
        self.closed = True


class FakeDockerAPI:
    """In-memory stand-in for docker.APIClient covering the calls we make"""

    def __init__(self):
        self.containers_by_id = {}
        self.logs = {}
        self.archives = []
        self.create_calls = []
        self.api_version = "1.41"
        self._counter = 0

    def _lookup(self, ref):
        for container in self.containers_by_id.values():
            if ref in (container["Id"], container["Name"].lstrip("/")):
                return container
        raise make_api_error(404, f"No such container: {ref}")

    def create_container_from_config(self, config, name=None):
        self.create_calls.append((config, name))
        if not config["Image"].startswith("node") and config["Image"] != "busybox":
            raise make_api_error(
                404, f"No such image: {config['Image']}", cls=ImageNotFound
            )
        if name and any(
            c["Name"] == f"/{name}" for c in self.containers_by_id.values()
        ):
            raise make_api_error(
                409, f'Conflict. The container name "/{name}" is already in use'
            )
        self._counter += 1
        container_id = f"{self._counter:064x}"
        host_config = config.get("HostConfig", {})
        self.containers_by_id[container_id] = {
            "Id": container_id,
            "Name": f"/{name or container_id[:12]}",
            "Image": "sha256:" + "ab" * 32,
            "Created": "2024-05-01T10:00:00.123456789Z",
            "RestartCount": 0,
            "Platform": "linux",
            "Config": {
                "Image": config["Image"],
                "Cmd": config.get("Cmd"),
                "Tty": config.get("Tty", False),
                "Labels": config.get("Labels") or {},
            },
            "State": {
                "Status": "created",
                "Running": False,
                "ExitCode": 0,
                "StartedAt": "0001-01-01T00:00:00Z",
                "FinishedAt": "0001-01-01T00:00:00Z",
            },
            "HostConfig": {
                "NetworkMode": host_config.get("NetworkMode", "bridge"),
                "RestartPolicy": host_config.get("RestartPolicy", {"Name": "no"}),
                "AutoRemove": False,
                "Memory": host_config.get("Memory", 0),
                "CpuShares": host_config.get("CpuShares", 0),
                "CpuQuota": 0,
                "CpuPeriod": 0,
                "PortBindings": host_config.get("PortBindings", {}),
            },
            "NetworkSettings": {"Ports": {}, "Networks": {}},
            "Mounts": [],
        }
        return {"Id": container_id, "Warnings": []}

    def start(self, container):
        found = self._lookup(container)
        found["State"].update(
            Status="running", Running=True, StartedAt="2024-05-01T10:00:01Z"
        )
        found["NetworkSettings"] = {
            "Ports": dict(found["HostConfig"]["PortBindings"]),
            "IPAddress": "172.17.0.2",
            "Gateway": "172.17.0.1",
            "MacAddress": "02:42:ac:11:00:02",
            "Networks": {
                "bridge": {
                    "IPAddress": "172.17.0.2",
                    "Gateway": "172.17.0.1",
                    "MacAddress": "02:42:ac:11:00:02",
                    "NetworkID": "net1",
                    "Aliases": None,
                }
            },
        }

    def stop(self, container, timeout=None):
        found = self._lookup(container)
        found["State"].update(
            Status="exited", Running=False, FinishedAt="2024-05-01T11:00:00Z"
        )
        found["NetworkSettings"]["Ports"] = {}

    def inspect_container(self, container):
        return self._lookup(container)

    def containers(self, all=False, filters=None):
        wanted = [item.split("=", 1) for item in (filters or {}).get("label", [])]
        entries = []
        for c in self.containers_by_id.values():
            if not all and not c["State"]["Running"]:
                continue
            labels = c["Config"]["Labels"]
            if any(labels.get(key) != value for key, value in wanted):
                continue
            entries.append(
                {
                    "Id": c["Id"],
                    "Names": [c["Name"]],
                    "Image": c["Config"]["Image"],
                    "ImageID": c["Image"],
                    "Command": " ".join(c["Config"]["Cmd"] or []),
                    "Created": 1714557600,
                    "State": c["State"]["Status"],
                    "Status": "Up 1 second" if c["State"]["Running"] else "Created",
                    "Labels": labels,
                    "Ports": [],
                    "HostConfig": {"NetworkMode": c["HostConfig"]["NetworkMode"]},
                }
            )
        return entries

    def remove_container(self, container, force=False):
        found = self._lookup(container)
        if found["State"]["Running"] and not force:
            raise make_api_error(
                409,
                "You cannot remove a running container. Stop the container before "
                "attempting removal or force remove",
            )
        del self.containers_by_id[found["Id"]]

    def put_archive(self, container, path, data):
        self._lookup(container)
        self.archives.append((container, path, data))
        return True

    def _url(self, pathfmt, *args):
        return pathfmt.format(*args)

    def _get(self, url, params=None, stream=False):
        container = url.split("/")[2]
        self.last_log_params = params
        try:
            self._lookup(container)
        except NotFound as e:
            return Mock(error=e)
        return FakeLogResponse(self.logs.get(container, b""))

    def _raise_for_status(self, response):
        error = getattr(response, "error", None)
        if isinstance(error, Exception):
            raise error


@pytest.fixture
def fake_api():
    return FakeDockerAPI()


@pytest.fixture
def docker_client(fake_api):
    client = MagicMock()
    client.api = fake_api
    client.ping.return_value = True
    return client


@pytest.fixture
def engine(docker_client):
    return EngineClient(docker_client)


@pytest.fixture
def api_error():
    return make_api_error


@pytest.fixture
def log_frame():
    return frame
