"""
Container image adapter.

Builds, tags, inspects, pushes and prunes images through the Docker SDK. SDK
calls block, so each one runs in the default executor under its own timeout.
"""

import logging
from typing import Any, Dict, List, Optional

import docker
from docker.errors import APIError, BuildError, DockerException, ImageNotFound, NotFound

from push_deployer.config.settings import BuildConfig, TimeoutConfig
from push_deployer.exceptions import LocalFailure, PublishFailure
from push_deployer.models import ImageReference
from push_deployer.utils.command import run_blocking

logger = logging.getLogger(__name__)


class DockerImages:
    """Image build/tag/push operations against the local Docker daemon."""

    def __init__(
        self,
        build_config: Optional[BuildConfig] = None,
        timeouts: Optional[TimeoutConfig] = None,
        client: Optional[docker.DockerClient] = None,
    ) -> None:
        """
        Initialize the adapter.

        Args:
            build_config: Resource ceiling for builds
            timeouts: Per-call time bounds
            client: Docker client; created from the environment on first use
        """
        self.build_config = build_config or BuildConfig()
        self.timeouts = timeouts or TimeoutConfig()
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise LocalFailure(f"Cannot connect to Docker daemon: {e}") from e
        return self._client

    def container_limits(self) -> Dict[str, Any]:
        """Resource limits applied to every build container."""
        limits: Dict[str, Any] = {
            "memory": self.build_config.memory_limit_bytes,
            "cpushares": self.build_config.cpu_shares,
        }
        if self.build_config.cpuset_cpus:
            limits["cpusetcpus"] = self.build_config.cpuset_cpus
        return limits

    async def build(
        self,
        context: str,
        image: ImageReference,
        dockerfile: str = "Dockerfile",
        build_args: Optional[Dict[str, str]] = None,
    ) -> str:
        """
        Build an image from a directory under the configured resource ceiling.

        Returns:
            ID of the built image

        Raises:
            LocalFailure: If the build fails
            CommandTimeout: If the build exceeds its bound
        """

        def _build() -> str:
            try:
                built, build_log = self.client.images.build(
                    path=context,
                    dockerfile=dockerfile,
                    tag=str(image),
                    buildargs=build_args or {},
                    container_limits=self.container_limits(),
                    pull=self.build_config.pull,
                    rm=True,
                    forcerm=True,
                )
            except BuildError as e:
                tail = _log_tail(e.build_log)
                raise LocalFailure(f"Docker build failed: {e.msg}{tail}") from e
            except (APIError, TypeError) as e:
                raise LocalFailure(f"Docker build failed: {e}") from e

            for chunk in build_log:
                line = chunk.get("stream", "").rstrip() if isinstance(chunk, dict) else ""
                if line:
                    logger.debug(f"[build] {line}")
            return str(built.id)

        logger.info(f"Building {image} from {context} (limits: {self.container_limits()})")
        image_id = await run_blocking(
            _build, timeout=self.timeouts.build, name=f"docker build {image}"
        )
        logger.info(f"Built {image} ({image_id[:19]})")
        return image_id

    async def image_id(self, image: ImageReference) -> Optional[str]:
        """ID of a local image, or None if it does not exist locally."""

        def _get() -> Optional[str]:
            try:
                return str(self.client.images.get(str(image)).id)
            except ImageNotFound:
                return None
            except APIError as e:
                raise LocalFailure(f"Failed to inspect {image}: {e}") from e

        return await run_blocking(
            _get, timeout=self.timeouts.inspect, name=f"docker image inspect {image}"
        )

    async def exists(self, image: ImageReference) -> bool:
        """Is the image present locally?"""
        return await self.image_id(image) is not None

    async def tag(self, source: ImageReference, target: ImageReference) -> None:
        """Point target at the same image as source (no copy)."""

        def _tag() -> None:
            try:
                local = self.client.images.get(str(source))
                if not local.tag(target.repository_path, tag=target.tag):
                    raise LocalFailure(f"Docker refused to tag {source} as {target}")
            except ImageNotFound as e:
                raise LocalFailure(f"Cannot tag {target}: {source} does not exist") from e
            except APIError as e:
                raise LocalFailure(f"Failed to tag {source} as {target}: {e}") from e

        await run_blocking(_tag, timeout=self.timeouts.inspect, name=f"docker tag {target}")
        logger.info(f"Tagged {source} as {target}")

    async def push(self, image: ImageReference) -> None:
        """
        Push one tag to its registry.

        Raises:
            PublishFailure: If the registry rejects the push
            CommandTimeout: If the push exceeds its bound
        """

        def _push() -> None:
            try:
                stream = self.client.images.push(
                    image.repository_path, tag=image.tag, stream=True, decode=True
                )
                for chunk in stream:
                    if "error" in chunk:
                        raise PublishFailure(f"Push of {image} failed: {chunk['error']}")
                    status = chunk.get("status")
                    if status and "digest" in status:
                        logger.debug(f"[push] {status}")
            except APIError as e:
                raise PublishFailure(f"Push of {image} failed: {e}") from e

        logger.info(f"Pushing {image}")
        await run_blocking(_push, timeout=self.timeouts.push, name=f"docker push {image}")

    async def pull(self, image: ImageReference) -> bool:
        """
        Pull a tag from its registry.

        Returns:
            True if pulled, False if the registry does not have it

        Raises:
            PublishFailure: If the registry cannot be reached
        """

        def _pull() -> bool:
            try:
                self.client.images.pull(image.repository_path, tag=image.tag)
                return True
            except (ImageNotFound, NotFound):
                return False
            except APIError as e:
                raise PublishFailure(f"Pull of {image} failed: {e}") from e

        return await run_blocking(_pull, timeout=self.timeouts.push, name=f"docker pull {image}")

    async def list_tags(self, repository_path: str) -> List[Any]:
        """Local images belonging to a repository."""
        return await run_blocking(
            lambda: self.client.images.list(name=repository_path),
            timeout=self.timeouts.inspect,
            name=f"docker images {repository_path}",
        )

    async def remove(self, reference: str) -> None:
        """Remove a local tag (the image itself goes once no tag refers to it)."""
        await run_blocking(
            lambda: self.client.images.remove(reference, noprune=False),
            timeout=self.timeouts.prune,
            name=f"docker rmi {reference}",
        )

    async def prune_dangling(self) -> int:
        """Remove dangling (untagged) images; returns how many were deleted."""
        result = await run_blocking(
            lambda: self.client.images.prune(filters={"dangling": True}),
            timeout=self.timeouts.prune,
            name="docker image prune",
        )
        deleted = (result or {}).get("ImagesDeleted") or []
        return len(deleted)


def _log_tail(build_log: Any, lines: int = 5) -> str:
    """Last few lines of a failed build, for the error message."""
    collected: List[str] = []
    try:
        for chunk in build_log:
            if isinstance(chunk, dict) and chunk.get("stream"):
                collected.append(chunk["stream"].rstrip())
    except TypeError:
        return ""
    tail = [line for line in collected if line][-lines:]
    return ("\n" + "\n".join(tail)) if tail else ""
