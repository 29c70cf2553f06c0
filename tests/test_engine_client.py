import io
import tarfile
from unittest.mock import MagicMock, patch

import pytest
from docker.errors import DockerException
from requests.exceptions import ConnectionError as RequestsConnectionError

from engine_client import EngineClient, make_archive, parse_tail
from errors import ClientError, ErrorKind, classify, is_not_found, is_conflict
from models import ZERO_TIME, ContainerConfig


def node_config(**overrides):
    values = {
        "image": "node:18-alpine",
        "ports": {"3000": "3000"},
        "memory_limit": 536870912,
    }
    values.update(overrides)
    return ContainerConfig(**values)


class TestConnect:
    """Test cases for opening an engine session"""

    def test_connect_success(self):
        with patch("engine_client.docker.DockerClient") as mock_client_cls:
            mock_client_cls.return_value.ping.return_value = True
            engine = EngineClient.connect("unix:///var/run/docker.sock", "1.41")

        mock_client_cls.assert_called_once_with(
            base_url="unix:///var/run/docker.sock", version="1.41", tls=False, timeout=60
        )
        assert not engine.closed

    def test_connect_empty_version_uses_sdk_default(self):
        with patch("engine_client.docker.DockerClient") as mock_client_cls:
            EngineClient.connect("tcp://localhost:2375")
        assert mock_client_cls.call_args.kwargs["version"] is None

    def test_connect_unreachable_engine(self):
        with patch("engine_client.docker.DockerClient") as mock_client_cls:
            mock_client_cls.return_value.ping.side_effect = RequestsConnectionError(
                "connection refused"
            )
            with pytest.raises(ClientError) as exc_info:
                EngineClient.connect("tcp://localhost:2375")

        assert exc_info.value.op == "connect"
        mock_client_cls.return_value.close.assert_called_once()

    def test_connect_invalid_host(self):
        with patch("engine_client.docker.DockerClient") as mock_client_cls:
            mock_client_cls.side_effect = DockerException("Invalid bind address format")
            with pytest.raises(ClientError) as exc_info:
                EngineClient.connect("nonsense://")
        assert exc_info.value.op == "connect"

    def test_connect_tls_requires_all_pem_files(self, tmp_path):
        (tmp_path / "cert.pem").write_text("cert")
        (tmp_path / "key.pem").write_text("key")
        with patch("engine_client.docker.DockerClient") as mock_client_cls:
            with pytest.raises(ClientError) as exc_info:
                EngineClient.connect(
                    "tcp://localhost:2376", tls_verify=True, cert_path=str(tmp_path)
                )
        assert exc_info.value.op == "connect"
        assert "ca.pem" in str(exc_info.value)
        mock_client_cls.assert_not_called()

    def test_connect_tls_passes_cert_files(self, tmp_path):
        for name in ("cert.pem", "key.pem", "ca.pem"):
            (tmp_path / name).write_text(name)
        with patch("engine_client.docker.DockerClient") as mock_client_cls:
            EngineClient.connect(
                "tcp://localhost:2376", tls_verify=True, cert_path=str(tmp_path)
            )
        tls = mock_client_cls.call_args.kwargs["tls"]
        assert tls.cert == (str(tmp_path / "cert.pem"), str(tmp_path / "key.pem"))
        assert tls.ca_cert == str(tmp_path / "ca.pem")
        assert tls.verify is True


class TestCreateContainer:
    """Test cases for container creation"""

    def test_create_returns_id(self, engine, fake_api):
        result = engine.create_container("app", node_config())
        assert result.id
        assert result.warnings == []
        body, name = fake_api.create_calls[0]
        assert name == "app"
        assert body["ExposedPorts"] == {"3000/tcp": {}}

    def test_create_does_not_start(self, engine):
        result = engine.create_container("app", node_config())
        assert engine.get_container(result.id).state == "created"

    def test_create_reports_warnings(self, docker_client):
        docker_client.api = MagicMock()
        docker_client.api.create_container_from_config.return_value = {
            "Id": "abc123",
            "Warnings": ["Your kernel does not support swap limit capabilities"],
        }
        result = EngineClient(docker_client).create_container("app", node_config())
        assert result.id == "abc123"
        assert result.warnings == [
            "Your kernel does not support swap limit capabilities"
        ]

    def test_invalid_port_fails_before_engine_call(self, engine, fake_api):
        with pytest.raises(ClientError) as exc_info:
            engine.create_container("app", node_config(ports={"http": "80"}))
        assert exc_info.value.op == "create_container"
        assert exc_info.value.details == "invalid port configuration"
        assert fake_api.create_calls == []

    def test_missing_image_is_classified(self, engine):
        with pytest.raises(ClientError) as exc_info:
            engine.create_container("app", node_config(image="missing:latest"))
        assert exc_info.value.op == "create_container"
        assert exc_info.value.kind == ErrorKind.IMAGE_NOT_FOUND

    def test_duplicate_name_is_conflict(self, engine):
        engine.create_container("app", node_config())
        with pytest.raises(ClientError) as exc_info:
            engine.create_container("app", node_config())
        assert is_conflict(exc_info.value)

    def test_engine_without_id_is_an_error(self, docker_client):
        docker_client.api = MagicMock()
        docker_client.api.create_container_from_config.return_value = {"Warnings": None}
        with pytest.raises(ClientError) as exc_info:
            EngineClient(docker_client).create_container("app", node_config())
        assert exc_info.value.op == "create_container"


class TestInspectAndList:
    """Test cases for reading container state"""

    def test_scenario_memory_and_port(self, engine):
        result = engine.create_container("app", node_config())

        info = engine.get_container(result.id)
        assert info.host_config.memory == 536870912
        assert [(p.private_port, p.public_port, p.type) for p in info.ports] == [
            (3000, 3000, "tcp")
        ]
        assert info.name == "app"
        assert info.state == "created"
        assert info.finished == ZERO_TIME

    def test_running_container_reports_network(self, engine):
        result = engine.create_container("app", node_config())
        engine.start_container(result.id)

        info = engine.get_container(result.id)
        assert info.state == "running"
        assert [(p.private_port, p.public_port, p.type) for p in info.ports] == [
            (3000, 3000, "tcp")
        ]
        assert info.network_settings.networks["bridge"].ip_address == "172.17.0.2"

    def test_stopped_container_keeps_ports(self, engine):
        result = engine.create_container("app", node_config())
        engine.start_container(result.id)
        engine.stop_container(result.id)

        info = engine.get_container(result.id)
        assert info.state == "exited"
        assert [(p.private_port, p.public_port, p.type) for p in info.ports] == [
            (3000, 3000, "tcp")
        ]

    def test_get_removed_container_is_not_found(self, engine):
        result = engine.create_container("app", node_config())
        engine.remove_container(result.id)
        with pytest.raises(ClientError) as exc_info:
            engine.get_container(result.id)
        assert exc_info.value.op == "inspect"
        assert is_not_found(exc_info.value)

    def test_list_running_only_by_default(self, engine):
        running = engine.create_container("web", node_config())
        engine.start_container(running.id)
        engine.create_container("idle", node_config())

        assert [c.name for c in engine.list_containers()] == ["web"]
        assert sorted(c.name for c in engine.list_containers(all=True)) == [
            "idle",
            "web",
        ]

    def test_list_label_filter_is_anded(self, engine):
        engine.create_container(
            "a", node_config(labels={"env": "prod", "team": "web"})
        )
        engine.create_container("b", node_config(labels={"env": "prod"}))

        matched = engine.list_containers(
            all=True, label_filter={"env": "prod", "team": "web"}
        )
        assert [c.name for c in matched] == ["a"]

    def test_list_failure_is_wrapped(self, docker_client):
        docker_client.api = MagicMock()
        docker_client.api.containers.side_effect = RequestsConnectionError("gone")
        with pytest.raises(ClientError) as exc_info:
            EngineClient(docker_client).list_containers()
        assert exc_info.value.op == "list_containers"
        assert classify(exc_info.value) == ErrorKind.GENERIC


class TestLogs:
    """Test cases for log retrieval"""

    def test_logs_are_demultiplexed(self, engine, fake_api, log_frame):
        result = engine.create_container("app", node_config())
        fake_api.logs[result.id] = (
            log_frame(1, b"listening on 3000\n")
            + log_frame(2, b"deprecation warning\n")
            + log_frame(1, b"GET / 200\n")
        )

        logs = engine.get_container_logs(result.id, "all")

        assert logs == (
            "STDOUT:\nlistening on 3000\nGET / 200\n\n"
            "STDERR:\ndeprecation warning\n"
        )
        assert logs.count("STDOUT:") == 1
        assert logs.count("STDERR:") == 1
        assert fake_api.last_log_params["stdout"] == 1
        assert fake_api.last_log_params["stderr"] == 1

    def test_tail_is_passed_through(self, engine, fake_api):
        result = engine.create_container("app", node_config())
        engine.get_container_logs(result.id, 50)
        assert fake_api.last_log_params["tail"] == "50"

    def test_invalid_tail(self, engine):
        with pytest.raises(ClientError) as exc_info:
            engine.get_container_logs("abc", "last-ten")
        assert exc_info.value.op == "get_logs"

    def test_logs_of_missing_container(self, engine):
        with pytest.raises(ClientError) as exc_info:
            engine.get_container_logs("does-not-exist")
        assert exc_info.value.op == "get_logs"
        assert is_not_found(exc_info.value)

    def test_truncated_stream_is_read_error(self, engine, fake_api, log_frame):
        result = engine.create_container("app", node_config())
        fake_api.logs[result.id] = log_frame(1, b"complete") + b"\x01\x00\x00\x00\x00\x00\x00\x10abc"
        with pytest.raises(ClientError) as exc_info:
            engine.get_container_logs(result.id)
        assert exc_info.value.op == "read_logs"

    def test_tty_container_logs_are_stdout(self, engine, fake_api, log_frame):
        result = engine.create_container("app", node_config())
        fake_api.containers_by_id[result.id]["Config"]["Tty"] = True
        # Raw terminal bytes that happen to look like a stderr frame header
        raw = log_frame(2, b"progress 42%\r")
        fake_api.logs[result.id] = raw

        logs = engine.read_container_logs(result.id)

        assert logs.stdout == raw.decode("utf-8")
        assert logs.stderr == ""

    def test_structured_logs(self, engine, fake_api, log_frame):
        result = engine.create_container("app", node_config())
        fake_api.logs[result.id] = log_frame(2, b"boom")
        logs = engine.read_container_logs(result.id)
        assert logs.stdout == ""
        assert logs.stderr == "boom"


class TestRemoveAndCopy:
    """Test cases for removal and archive upload"""

    def test_remove_running_requires_force(self, engine):
        result = engine.create_container("app", node_config())
        engine.start_container(result.id)

        with pytest.raises(ClientError) as exc_info:
            engine.remove_container(result.id, force=False)
        assert exc_info.value.op == "remove_container"
        assert is_conflict(exc_info.value)

        engine.remove_container(result.id, force=True)
        assert engine.list_containers(all=True) == []

    def test_copy_to_container(self, engine, fake_api):
        result = engine.create_container("app", node_config())
        archive = make_archive({"server.js": "console.log('hi')"})
        engine.copy_to_container(result.id, "/app", archive)
        assert fake_api.archives == [(result.id, "/app", archive)]

    def test_make_archive_contents(self):
        archive = make_archive({"/etc/app.conf": b"key=value"})
        with tarfile.open(fileobj=io.BytesIO(archive)) as tar:
            member = tar.getmember("etc/app.conf")
            assert tar.extractfile(member).read() == b"key=value"

    def test_empty_container_id_rejected(self, engine):
        with pytest.raises(ClientError) as exc_info:
            engine.remove_container("")
        assert exc_info.value.op == "remove_container"


class TestClose:
    """Test cases for releasing the session"""

    def test_operations_fail_after_close(self, engine, docker_client):
        engine.close()
        docker_client.close.assert_called_once()
        with pytest.raises(ClientError) as exc_info:
            engine.list_containers()
        assert exc_info.value.op == "list_containers"
        assert "closed" in str(exc_info.value)

    def test_close_twice_releases_once(self, engine, docker_client):
        engine.close()
        engine.close()
        docker_client.close.assert_called_once()

    def test_context_manager_closes(self, docker_client):
        with EngineClient(docker_client) as engine:
            assert not engine.closed
        assert engine.closed


@pytest.mark.parametrize(
    "tail,expected", [("all", "all"), ("", "all"), (None, "all"), (10, "10"), ("0", "0")]
)
def test_parse_tail(tail, expected):
    assert parse_tail(tail) == expected
