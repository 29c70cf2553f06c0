"""
Engine Client Module

The only component that talks to the container engine. Wraps a docker SDK
session and exposes the container lifecycle operations used by the API.
Requests are translated by ``translator``, responses shaped by
``normalizer``, and every failure is raised as ``errors.ClientError``.

One instance is shared by all request handlers. It keeps no per-call state,
so concurrent use needs no locking.
"""

import io
import tarfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Mapping, Optional, Union

import docker
import structlog
from docker.errors import DockerException, NotFound
from docker.tls import TLSConfig
from requests.exceptions import RequestException

from errors import ClientError, InvalidInputError
from log_stream import ContainerLogs, LogFrame, LogStreamError, collect_logs, iter_frames
from models import ContainerConfig, ContainerInfo, CreateResult
from normalizer import normalize_inspect, normalize_list_entry
from translator import translate

logger = structlog.get_logger(__name__)

TLS_FILES = ("cert.pem", "key.pem", "ca.pem")
LOG_CHUNK_SIZE = 8192

_ENGINE_ERRORS = (DockerException, RequestException, LogStreamError)


class ClientClosedError(RuntimeError):
    """Operation attempted on a closed engine client"""


def tls_config(cert_path: str) -> TLSConfig:
    """Client-certificate TLS settings from ``cert_path``.

    The directory must hold cert.pem, key.pem and ca.pem.
    """
    base = Path(cert_path or "")
    missing = [name for name in TLS_FILES if not (base / name).is_file()]
    if not cert_path or missing:
        raise FileNotFoundError(
            f"TLS material missing in {cert_path!r}: {', '.join(missing or TLS_FILES)}"
        )
    cert, key, ca = (str(base / name) for name in TLS_FILES)
    return TLSConfig(client_cert=(cert, key), ca_cert=ca, verify=True)


def parse_tail(tail: Union[str, int, None]) -> str:
    """Normalize a log tail to ``"all"`` or a non-negative line count."""
    if tail is None or tail == "" or tail == "all":
        return "all"
    text = str(tail).strip()
    if not text.isdigit():
        raise InvalidInputError(f"tail must be 'all' or a line count, got {tail!r}")
    return text


def make_archive(files: Mapping[str, Union[bytes, str]]) -> bytes:
    """Pack ``{archive path: content}`` into an in-memory tar archive."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        for name, content in files.items():
            data = content.encode("utf-8") if isinstance(content, str) else content
            info = tarfile.TarInfo(name=name.lstrip("/"))
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


class EngineClient:
    def __init__(self, docker_client: docker.DockerClient, logger=None):
        self._docker = docker_client
        self._api = docker_client.api
        self._logger = logger or structlog.get_logger(__name__)
        self._closed = False

    @classmethod
    def connect(
        cls,
        host: str,
        api_version: str = "",
        tls_verify: bool = False,
        cert_path: str = "",
        timeout: int = 60,
        logger=None,
    ) -> "EngineClient":
        """Open a session to the engine at ``host`` and check that it answers.

        Raises ClientError(op="connect") when the session can't be set up.
        Connection failures are not retried.
        """
        log = logger or structlog.get_logger(__name__)
        try:
            tls = tls_config(cert_path) if tls_verify else False
            client = docker.DockerClient(
                base_url=host, version=api_version or None, tls=tls, timeout=timeout
            )
        except (DockerException, OSError) as e:
            log.error("Engine connection failed", host=host, error=str(e))
            raise ClientError("connect", e) from e

        try:
            client.ping()
        except _ENGINE_ERRORS as e:
            client.close()
            log.error("Engine did not answer", host=host, error=str(e))
            raise ClientError("connect", e, "engine did not answer ping") from e

        log.info("Connected to engine", host=host, api_version=client.api.api_version)
        return cls(client, logger=log)

    @property
    def closed(self) -> bool:
        return self._closed

    @contextmanager
    def _operation(self, op: str, container_id: Optional[str] = None):
        if self._closed:
            raise ClientError(op, ClientClosedError("client is closed"))
        if container_id is not None and not container_id.strip():
            raise ClientError(op, InvalidInputError("container id is required"))
        try:
            yield
        except ClientError:
            raise
        except _ENGINE_ERRORS as e:
            self._logger.warning(
                "Engine operation failed", op=op, container_id=container_id, error=str(e)
            )
            raise ClientError(op, e) from e

    def ping(self) -> bool:
        with self._operation("ping"):
            return bool(self._docker.ping())

    def create_container(self, name: str, config: ContainerConfig) -> CreateResult:
        """Create (but do not start) a container.

        An unparsable port map fails before the engine is contacted. If the
        engine fails after it has created something, that container is left
        in place for the caller to remove.
        """
        with self._operation("create_container"):
            try:
                body = translate(config)
            except InvalidInputError as e:
                raise ClientError(
                    "create_container", e, "invalid port configuration"
                ) from e

            try:
                response = self._api.create_container_from_config(
                    body, name=name or None
                )
            except _ENGINE_ERRORS as e:
                raise ClientError(
                    "create_container", e, "failed to create container"
                ) from e

        container_id = response.get("Id") or ""
        if not container_id:
            raise ClientError(
                "create_container", DockerException("engine returned no container id")
            )
        warnings = [w for w in response.get("Warnings") or [] if w]
        for warning in warnings:
            self._logger.warning(
                "Warning during container creation", name=name, warning=warning
            )
        self._logger.info("Container created", name=name, container_id=container_id)
        return CreateResult(id=container_id, warnings=warnings)

    def start_container(self, container_id: str) -> None:
        with self._operation("start_container", container_id):
            self._api.start(container_id)
        self._logger.info("Container started", container_id=container_id)

    def stop_container(self, container_id: str, timeout: int = 10) -> None:
        with self._operation("stop_container", container_id):
            self._api.stop(container_id, timeout=timeout)
        self._logger.info("Container stopped", container_id=container_id)

    def list_containers(
        self, all: bool = False, label_filter: Optional[Mapping[str, str]] = None
    ) -> List[ContainerInfo]:
        """List containers; only running ones unless ``all``.

        Every ``label_filter`` pair must match. Order is the engine's.
        """
        filters = None
        if label_filter:
            filters = {"label": [f"{k}={v}" for k, v in label_filter.items()]}
        with self._operation("list_containers"):
            entries = self._api.containers(all=all, filters=filters)
        return [normalize_list_entry(entry) for entry in entries or []]

    def get_container(self, container_id: str) -> ContainerInfo:
        """Inspect one container by full ID (or exact name)"""
        with self._operation("inspect", container_id):
            try:
                payload = self._api.inspect_container(container_id)
            except NotFound as e:
                raise ClientError("inspect", e, "container not found") from e
        return normalize_inspect(payload)

    def _open_log_stream(self, container_id: str, tail: str):
        # docker-py's logs() merges stdout and stderr into one byte string, so
        # the raw response is requested through APIClient internals (_url,
        # _get, _raise_for_status), checked against docker 7.1.0. This is the
        # only place those private members are used.
        params = {"stdout": 1, "stderr": 1, "follow": 0, "timestamps": 0, "tail": tail}
        url = self._api._url("/containers/{0}/logs", container_id)
        response = self._api._get(url, params=params, stream=True)
        self._api._raise_for_status(response)
        return response

    def iter_log_frames(
        self, container_id: str, tail: Union[str, int] = "all"
    ) -> Iterator[LogFrame]:
        """Stream demultiplexed log frames; nothing is buffered here"""
        try:
            tail = parse_tail(tail)
        except InvalidInputError as e:
            raise ClientError("get_logs", e) from e

        with self._operation("get_logs", container_id):
            # Framing depends on how the container was created, as in docker-py
            payload = self._api.inspect_container(container_id)
            tty = bool((payload.get("Config") or {}).get("Tty"))
            response = self._open_log_stream(container_id, tail)
        try:
            with self._operation("read_logs"):
                yield from iter_frames(
                    response.iter_content(chunk_size=LOG_CHUNK_SIZE), tty=tty
                )
        finally:
            response.close()

    def read_container_logs(
        self, container_id: str, tail: Union[str, int] = "all"
    ) -> ContainerLogs:
        return collect_logs(self.iter_log_frames(container_id, tail))

    def get_container_logs(self, container_id: str, tail: Union[str, int] = "all") -> str:
        """Whole log as text with one STDOUT: and one STDERR: section.

        The full output is held in memory; bound ``tail`` for chatty containers.
        """
        return self.read_container_logs(container_id, tail).render()

    def copy_to_container(
        self, container_id: str, dest_path: str, content: Union[bytes, io.IOBase]
    ) -> None:
        """Extract a tar archive into ``dest_path`` inside the container"""
        with self._operation("copy_to_container", container_id):
            self._api.put_archive(container_id, dest_path, content)
        self._logger.info(
            "Archive copied to container", container_id=container_id, path=dest_path
        )

    def remove_container(self, container_id: str, force: bool = False) -> None:
        """Remove a container; without ``force`` a running one is refused"""
        with self._operation("remove_container", container_id):
            self._api.remove_container(container_id, force=force)
        self._logger.info("Container removed", container_id=container_id, force=force)

    def close(self) -> None:
        """Release the engine session. Later calls are no-ops."""
        if self._closed:
            return
        self._closed = True
        try:
            self._docker.close()
        except _ENGINE_ERRORS as e:
            raise ClientError("close", e) from e

    def __enter__(self) -> "EngineClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def engine_from_settings(settings, logger=None) -> EngineClient:
    docker_settings = settings.docker
    return EngineClient.connect(
        host=docker_settings.host,
        api_version=docker_settings.api_version,
        tls_verify=docker_settings.tls_verify,
        cert_path=docker_settings.cert_path,
        timeout=docker_settings.timeout,
        logger=logger,
    )
