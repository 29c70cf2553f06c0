"""
Project Scaffold Module

Prepares a Node.js project directory as a build context: validates
package.json and writes Dockerfile, .dockerignore and .env. Never talks to
the engine; the container layer only receives the resulting paths and names.
"""

import io
import json
import tarfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from config import ContainerDefaults
from models import ContainerConfig, ProjectContainerRequest
from utils import logger

DOCKERFILE_TEMPLATE = """FROM {base_image}

WORKDIR /app

COPY package*.json ./

RUN npm install

COPY . .

EXPOSE {port}

CMD ["npm", "start"]
"""

DOCKERIGNORE = """node_modules
npm-debug.log
Dockerfile
.dockerignore
.git
.gitignore
README.md
"""

# Top-level entries never shipped into the container
ARCHIVE_EXCLUDES = ("node_modules", ".git", "npm-debug.log")

ENV_FILE = """NODE_ENV=production
PORT=${{PORT:-{port}}}
"""


class ProjectError(Exception):
    """Project directory is not a usable Node.js build context"""


class ProjectScaffold:
    def __init__(
        self,
        project_path: str,
        base_image: str = "node:18-alpine",
        default_port: str = "3000",
        required_deps: Optional[List[str]] = None,
    ):
        self.project_path = Path(project_path)
        self.base_image = base_image
        self.default_port = default_port
        self.required_deps = list(required_deps or [])

    @classmethod
    def from_defaults(cls, project_path: str, defaults: ContainerDefaults):
        return cls(
            project_path,
            base_image=defaults.base_image,
            default_port=defaults.default_port,
            required_deps=defaults.required_deps,
        )

    def read_package_json(self) -> Dict[str, Any]:
        path = self.project_path / "package.json"
        if not path.is_file():
            raise ProjectError(f"package.json not found in {self.project_path}")
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ProjectError(f"failed to read package.json: {e}")
        if not isinstance(data, dict):
            raise ProjectError("package.json must contain a JSON object")
        return data

    def validate(self) -> Dict[str, Any]:
        """Check the project and return its parsed package.json"""
        package = self.read_package_json()
        for field in ("name", "version"):
            if not package.get(field):
                raise ProjectError(f"package.json is missing '{field}'")
        dependencies = package.get("dependencies") or {}
        for dep in self.required_deps:
            if dep not in dependencies:
                raise ProjectError(f"required dependency {dep} not found")
        return package

    def _write(self, name: str, content: str) -> Path:
        path = self.project_path / name
        try:
            path.write_text(content, encoding="utf-8")
        except OSError as e:
            raise ProjectError(f"failed to create {name}: {e}")
        return path

    def generate_dockerfile(self) -> Path:
        return self._write(
            "Dockerfile",
            DOCKERFILE_TEMPLATE.format(
                base_image=self.base_image, port=self.default_port
            ),
        )

    def _write_if_missing(self, name: str, content: str) -> Path:
        path = self.project_path / name
        if path.exists():
            return path
        return self._write(name, content)

    def write_dockerignore(self) -> Path:
        return self._write_if_missing(".dockerignore", DOCKERIGNORE)

    def write_env_file(self) -> Path:
        return self._write_if_missing(".env", ENV_FILE.format(port=self.default_port))

    def archive(self) -> bytes:
        """Tar the project tree for copying into a container"""
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as tar:
            for path in sorted(self.project_path.rglob("*")):
                relative = path.relative_to(self.project_path)
                if relative.parts[0] in ARCHIVE_EXCLUDES or not path.is_file():
                    continue
                tar.add(str(path), arcname=relative.as_posix())
        return buffer.getvalue()

    def prepare_build_context(self) -> Dict[str, Any]:
        """Validate, regenerate the Dockerfile and add any missing context files.

        An existing ``.env`` or ``.dockerignore`` belongs to the project and is
        left untouched.
        """
        package = self.validate()
        self.generate_dockerfile()
        self.write_dockerignore()
        self.write_env_file()
        logger.info(
            "Build context prepared",
            project_path=str(self.project_path),
            project=package.get("name"),
        )
        return package


def container_config_for(
    package: Dict[str, Any],
    request: ProjectContainerRequest,
    defaults: ContainerDefaults,
) -> ContainerConfig:
    """ContainerConfig for a validated project; request values win over defaults"""
    env = list(request.env)
    if request.inject_project_name:
        env.append(f"NODE_PROJECT_NAME={package.get('name')}")

    ports = request.ports
    if ports is None:
        ports = {defaults.default_port: defaults.default_port}

    return ContainerConfig(
        image=request.image or defaults.base_image,
        command=request.command,
        env=env,
        working_dir=request.working_dir,
        cpu_shares=(
            defaults.cpu_shares if request.cpu_shares is None else request.cpu_shares
        ),
        memory_limit=(
            defaults.memory_limit
            if request.memory_limit is None
            else request.memory_limit
        ),
        network_mode=request.network_mode or defaults.network_mode,
        restart_policy=request.restart_policy or defaults.restart_policy,
        labels=request.labels,
        ports=ports,
    )
