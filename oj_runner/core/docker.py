import docker
import io
import logging
import os
import tarfile
import time
from typing import Optional

import requests
from docker.errors import DockerException, APIError, ImageNotFound

from oj_runner.core.config import settings
from oj_runner.core.errors import ExecutionError, ExecutionTimeoutError, OutputLimitExceededError
from oj_runner.core.sandbox import Deadline, describe_exit, tail_text
from oj_runner.core.workspace import Workspace

logger = logging.getLogger(__name__)

SANDBOX_DIR = "/sandbox"
INPUT_FILENAME = "input.txt"
STDERR_TAIL_LINES = 200


def _normalize_docker_host(value: str) -> str:
    """Ensure Docker host has a proper scheme for docker-py.

    Common mistakes corrected here:
      - "/var/run/docker.sock" -> "unix:///var/run/docker.sock"
      - "unix:/var/run/docker.sock" -> "unix:///var/run/docker.sock"
    """
    host = (value or "").strip()
    if not host:
        return "unix:///var/run/docker.sock"

    if host.startswith("/"):
        return f"unix://{host}"

    if host.startswith("unix:/") and not host.startswith("unix://"):
        return "unix://" + host[len("unix:/"):].lstrip("/")

    return host


def get_docker_client():
    """Create a Docker client with proper configuration"""
    configured_host = os.getenv("DOCKER_HOST") or settings.DOCKER_SOCKET
    base_url = _normalize_docker_host(configured_host)
    logger.debug(f"Initializing Docker client with base_url={base_url}")
    try:
        return docker.DockerClient(base_url=base_url, timeout=60, version="auto")
    except DockerException as e:
        logger.critical(f"Docker client initialization failed: {str(e)}")
        raise ExecutionError(f"Execution error: Docker unavailable: {e}") from e


def _build_archive(artifact_path, stdin_text: str) -> bytes:
    """Tar the artifact and its input under sandbox/, read-only for the child."""
    now = int(time.time())
    stream = io.BytesIO()
    with tarfile.open(fileobj=stream, mode="w") as tar:
        root = tarfile.TarInfo(name=SANDBOX_DIR.lstrip("/"))
        root.type = tarfile.DIRTYPE
        root.mode = 0o755
        root.mtime = now
        tar.addfile(root)
        for name, payload in (
            (artifact_path.name, artifact_path.read_bytes()),
            (INPUT_FILENAME, stdin_text.encode("utf-8")),
        ):
            info = tarfile.TarInfo(name=f"{SANDBOX_DIR.lstrip('/')}/{name}")
            info.size = len(payload)
            info.mtime = now
            info.mode = 0o444
            tar.addfile(info, io.BytesIO(payload))
    return stream.getvalue()


class DockerSandboxRunner:
    """Same contract as ProcessSandboxRunner, confined to a throwaway container."""

    def __init__(
        self,
        image: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        memory_limit_mb: Optional[int] = None,
        max_output_bytes: Optional[int] = None,
        client_factory=get_docker_client,
    ):
        self.image = image or settings.SANDBOX_IMAGE
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.RUN_TIMEOUT_SECONDS
        self.memory_limit_mb = memory_limit_mb or settings.RUN_MEMORY_LIMIT_MB
        self.max_output_bytes = max_output_bytes or settings.RUN_MAX_OUTPUT_BYTES
        self.client_factory = client_factory

    def effective_timeout(self, deadline: Optional[Deadline]) -> float:
        if deadline is None:
            return self.timeout_seconds
        return min(self.timeout_seconds, deadline.remaining())

    def _collect_stdout(self, container) -> str:
        """Stream stdout from the container, failing once it passes the cap."""
        buffer = bytearray()
        for chunk in container.logs(stdout=True, stderr=False, stream=True):
            buffer.extend(chunk)
            if len(buffer) > self.max_output_bytes:
                raise OutputLimitExceededError(
                    f"Output limit exceeded: more than {self.max_output_bytes} bytes written to stdout",
                    limit_bytes=self.max_output_bytes,
                )
        return bytes(buffer).decode("utf-8", errors="replace")

    def run(self, artifact, workspace: Workspace, stdin_text: str, deadline: Optional[Deadline] = None) -> str:
        timeout = self.effective_timeout(deadline)
        if timeout <= 0:
            raise ExecutionTimeoutError("Execution timed out before it could start", timeout_seconds=0.0)

        client = None
        container = None
        stage = "init"
        log_extra = {"workspace": str(workspace.path), "stage": stage}
        try:
            client = self.client_factory()

            stage = "create_container"
            container = client.containers.create(
                image=self.image,
                command=["sh", "-c", f"exec python -I -S {artifact.path.name} < {INPUT_FILENAME}"],
                working_dir=SANDBOX_DIR,
                labels={"com.oj_runner.workspace": workspace.path.name},
                network_mode="none",  # No network access
                mem_limit=f"{self.memory_limit_mb}m",
                memswap_limit=f"{self.memory_limit_mb}m",
                pids_limit=settings.SANDBOX_PIDS_LIMIT,
                cpu_quota=settings.SANDBOX_CPU_QUOTA,
                security_opt=["no-new-privileges"],
                cap_drop=["ALL"],
                user="nobody",
                detach=True,
            )
            log_extra = {**log_extra, "container_id": getattr(container, "id", None), "stage": stage}
            logger.info("Sandbox container created", extra=log_extra)

            stage = "inject_artifact"
            container.put_archive(path="/", data=_build_archive(artifact.path, stdin_text))

            stage = "start"
            container.start()

            stage = "wait"
            try:
                wait_result = container.wait(timeout=timeout)
            except requests.exceptions.RequestException:
                logger.warning(f"Sandbox container killed after {timeout:.2f}s", extra=log_extra)
                try:
                    container.kill()
                except APIError as e:
                    logger.debug(f"Kill after timeout failed: {e}", extra=log_extra)
                raise ExecutionTimeoutError(f"Execution timed out after {timeout:.2f}s", timeout_seconds=timeout)

            exit_code = int(wait_result.get("StatusCode", 1))

            stage = "collect_logs"
            stdout = self._collect_stdout(container)
            if exit_code != 0:
                stderr = container.logs(stdout=False, stderr=True, tail=STDERR_TAIL_LINES).decode("utf-8", errors="replace")
                logger.info(f"Sandbox container exited with {exit_code}", extra=log_extra)
                raise ExecutionError(f"Runtime error ({describe_exit(exit_code)}):\n{tail_text(stderr.strip())}")
            return stdout

        except ImageNotFound as e:
            logger.error(f"Sandbox image not found: {self.image}", extra=log_extra)
            raise ExecutionError(f"Execution error: sandbox image not found: {self.image}") from e
        except (APIError, DockerException) as e:
            logger.error(f"Container execution failed at stage '{stage}': {e}", extra=log_extra)
            raise ExecutionError(f"Execution error at stage '{stage}': {e}") from e
        finally:
            if container is not None:
                try:
                    container.remove(force=True)
                except DockerException as e:
                    logger.warning(f"Failed to remove sandbox container: {e}", extra=log_extra)
            if client is not None:
                client.close()
