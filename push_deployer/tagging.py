"""
Image tagging protocol.

Each workload has three tag roles in the registry:

- revision tag (``<short-hash>``): immutable, one per deployed revision
- ``latest``: the image the workload should run
- ``last-stable``: the last image confirmed healthy

``stable`` is re-pointed at the previous ``latest`` at the start of every run,
before any new tag exists, so a failed rollout always has somewhere to go
back to. Tags are pointers onto content-addressed images, never copies.
"""

import logging
from typing import Optional, Tuple

from push_deployer.docker_images import DockerImages
from push_deployer.exceptions import DeployerError, FatalError
from push_deployer.models import ImageReference, Revision

logger = logging.getLogger(__name__)


def image_references(
    registry_url: str,
    workload_name: str,
    revision: Revision,
    latest_tag: str = "latest",
    stable_tag: str = "last-stable",
) -> Tuple[ImageReference, ImageReference, ImageReference]:
    """
    Derive the commit, latest and stable image references.

    Pure string composition; touches neither Docker nor the registry.

    Returns:
        Tuple of (commit_image, latest_image, stable_image)
    """
    registry = registry_url.rstrip("/")
    if "://" in registry:
        registry = registry.split("://", 1)[1]

    commit = ImageReference(registry=registry, repository=workload_name, tag=revision.short)
    return commit, commit.with_tag(latest_tag), commit.with_tag(stable_tag)


class TaggingProtocol:
    """Maintains the three tag roles for one workload and revision."""

    def __init__(
        self,
        images: DockerImages,
        registry_url: str,
        workload_name: str,
        revision: Revision,
        latest_tag: str = "latest",
        stable_tag: str = "last-stable",
    ) -> None:
        self.images = images
        self.revision = revision
        self.commit_image, self.latest_image, self.stable_image = image_references(
            registry_url, workload_name, revision, latest_tag, stable_tag
        )

    async def _available(self, image: ImageReference) -> bool:
        """Present locally, or pullable from the registry."""
        if await self.images.exists(image):
            return True
        logger.info(f"{image} not present locally, checking registry")
        return await self.images.pull(image)

    async def stable_exists(self) -> bool:
        """Is there a local stable image to publish or restore?"""
        return await self.images.exists(self.stable_image)

    async def backup_current_as_stable(self) -> bool:
        """
        Point ``stable`` at the image ``latest`` currently refers to.

        A missing ``latest`` (first-ever deployment) is expected and is a
        no-op, as is a ``latest`` that already refers to this revision.
        Errors are logged and never propagate.

        Returns:
            True if stable was re-pointed
        """
        try:
            if not await self._available(self.latest_image):
                logger.info(f"No existing {self.latest_image} to back up. Skipping.")
                return False

            # Re-run of the revision latest already points at: keep stable
            # on the generation before it
            latest_id = await self.images.image_id(self.latest_image)
            if latest_id and latest_id == await self.images.image_id(self.commit_image):
                logger.info(f"{self.latest_image} is already {self.revision.short}; keeping stable")
                return False

            await self.images.tag(self.latest_image, self.stable_image)
            image_id: Optional[str] = await self.images.image_id(self.stable_image)
            logger.info(
                f"Backed up {self.latest_image} as {self.stable_image}"
                + (f" ({image_id[:19]})" if image_id else "")
            )
            return True

        except DeployerError as e:
            logger.error(f"Could not back up {self.latest_image} as stable: {e}")
            return False

    async def promote_to_latest(self) -> None:
        """Point ``latest`` at the freshly built revision image."""
        await self.images.tag(self.commit_image, self.latest_image)

    async def restore_stable_to_latest(self) -> None:
        """
        Point ``latest`` back at ``stable`` and republish it.

        Raises:
            FatalError: If there is no stable image (failure on the very first
                deployment); nothing can be restored
            DeployerError: If tagging or pushing fails
        """
        if not await self._available(self.stable_image):
            raise FatalError(
                f"No {self.stable_image} exists to roll back to; manual intervention required"
            )

        await self.images.tag(self.stable_image, self.latest_image)
        await self.images.push(self.latest_image)
        logger.warning(f"Restored {self.latest_image} to {self.stable_image}")

    async def revert_latest(self, previous_id: Optional[str], republish: bool) -> str:
        """
        Put ``latest`` back on the image it referred to before this run.

        Used when the run stops after ``promote_to_latest`` but before the
        cluster picked up the new revision. Backup has already pointed
        ``stable`` at that image whenever there was one to point at.

        Args:
            previous_id: Image id ``latest`` had before promotion, or None if
                there was no ``latest``
            republish: Whether the promoted ``latest`` already reached the
                registry and has to be pushed again

        Returns:
            Description of what was done

        Raises:
            FatalError: If the previous image cannot be found under ``stable``
            DeployerError: If tagging, untagging or pushing fails
        """
        current_id = await self.images.image_id(self.latest_image)

        if previous_id is None:
            if current_id is not None:
                await self.images.remove(str(self.latest_image))
            if republish:
                logger.warning(
                    f"Untagged local {self.latest_image}; the registry keeps "
                    f"{self.revision.short} as latest until the next deployment"
                )
                return f"untagged local latest; registry latest is still {self.revision.short}"
            return "untagged latest"

        if current_id == previous_id:
            return "latest unchanged"

        if await self.images.image_id(self.stable_image) != previous_id:
            raise FatalError(
                f"Cannot restore {self.latest_image}: previous image {previous_id[:19]} "
                f"is not tagged {self.stable_image.tag}"
            )

        await self.images.tag(self.stable_image, self.latest_image)
        if republish:
            await self.images.push(self.latest_image)
        logger.warning(f"Restored {self.latest_image} to {self.stable_image} ({previous_id[:19]})")
        return f"latest -> {self.stable_image.tag}" + (" (republished)" if republish else "")
