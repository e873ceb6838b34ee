import logging
import os
import time
from dataclasses import dataclass, field

import docker
from docker.errors import APIError, DockerException, NotFound

from app.errors import ProvisioningError
from app.models import SandboxEnvironment

logger = logging.getLogger(__name__)

CONTAINER_PREFIX = "sandbox-"
SESSION_LABEL = "schoolchat.sandbox.session"


@dataclass
class ContainerInfo:
    container_id: str
    name: str
    ports: dict[str, int] = field(default_factory=dict)


def _get_docker_client():
    """Try multiple Docker socket locations (macOS Docker Desktop compatibility)."""
    # Try default first (respects DOCKER_HOST env var)
    try:
        client = docker.from_env()
        client.ping()
        return client
    except Exception:
        pass

    # macOS Docker socket locations (Colima, Docker Desktop, etc.)
    home = os.path.expanduser("~")
    socket_paths = [
        f"unix://{home}/.config/colima/default/docker.sock",
        f"unix://{home}/.colima/default/docker.sock",
        f"unix://{home}/.docker/run/docker.sock",
        "unix:///var/run/docker.sock",
    ]

    for sock in socket_paths:
        try:
            client = docker.DockerClient(base_url=sock)
            client.ping()
            return client
        except Exception:
            continue

    raise docker.errors.DockerException("Could not connect to Docker daemon")


class DockerManager:
    """Backs sandbox sessions with one container each on an isolated network."""

    def __init__(self, host: str = "127.0.0.1"):
        self.client = _get_docker_client()
        self.host = host
        self.network_name = "schoolchat-sandbox-net"
        self._ensure_network()

    def _ensure_network(self):
        """Create a dedicated bridge for sandbox containers if it doesn't exist."""
        try:
            self.client.networks.get(self.network_name)
        except NotFound:
            # internal=True would block the published ports users connect to
            self.client.networks.create(self.network_name, driver="bridge", internal=False)

    def run_container(
        self,
        image: str,
        name: str,
        labels: dict[str, str] | None = None,
        memory_limit: str = "512m",
        cpu_quota: int = 50000,
    ) -> ContainerInfo:
        try:
            container = self.client.containers.run(
                image,
                detach=True,
                name=name,
                labels=labels or {},
                network=self.network_name,
                publish_all_ports=True,
                mem_limit=memory_limit,
                cpu_quota=cpu_quota,
                auto_remove=False,
            )
        except DockerException as e:
            raise ProvisioningError(f"Failed to start sandbox container: {e}") from e

        # Wait for container to be ready
        try:
            for _ in range(10):
                container.reload()
                if container.status == "running":
                    break
                time.sleep(0.5)
        except DockerException as e:
            self.stop_container(container.id)
            raise ProvisioningError(f"Sandbox container did not become ready: {e}") from e

        ports = {}
        for container_port, bindings in (container.attrs.get("NetworkSettings", {}).get("Ports") or {}).items():
            if bindings:
                ports[container_port] = int(bindings[0]["HostPort"])
        return ContainerInfo(container_id=container.id, name=name, ports=ports)

    def provision(self, session_id: int, environment: SandboxEnvironment) -> dict:
        if not environment.image:
            raise ProvisioningError(f"Environment {environment.id} has no container image")
        info = self.run_container(
            environment.image,
            name=f"{CONTAINER_PREFIX}{session_id}-{int(time.time())}",
            labels={SESSION_LABEL: str(session_id)},
        )
        logger.info(f"Started container {info.container_id[:12]} for sandbox session {session_id}")
        return {
            "container_id": info.container_id,
            "host": self.host,
            "ports": info.ports,
        }

    def release(self, container_id: str) -> None:
        self.stop_container(container_id)

    def stop_container(self, container_id: str, timeout: int = 5):
        """Stop and remove a container."""
        try:
            container = self.client.containers.get(container_id)
            container.stop(timeout=timeout)
            container.remove(force=True)
        except NotFound:
            pass

    def container_running(self, container_id: str) -> bool:
        """Check if container is still running."""
        try:
            container = self.client.containers.get(container_id)
            return container.status == "running"
        except NotFound:
            return False

    def cleanup_all_sandbox_containers(self):
        """Remove all sandbox containers (for cleanup on shutdown)."""
        for container in self.client.containers.list(all=True, filters={"label": SESSION_LABEL}):
            try:
                container.stop(timeout=2)
                container.remove(force=True)
            except APIError as e:
                logger.warning(f"Could not remove {container.name}: {e}")
