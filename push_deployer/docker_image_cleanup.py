"""
Local Docker image cleanup.

Runs after a successful deployment: drops dangling images and all but the
newest N revision tags of the workload's repository. Images behind the
``latest`` and ``stable`` tags, or the one just deployed, are never removed.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Set

from docker.errors import APIError

from push_deployer.docker_images import DockerImages
from push_deployer.exceptions import DeployerError
from push_deployer.models import ImageReference

logger = logging.getLogger(__name__)


class DockerImageCleanup:
    """Prunes old local images for one workload."""

    def __init__(self, images: DockerImages, revisions_to_keep: int = 3):
        """
        Initialize Docker image cleanup.

        Args:
            images: Image adapter
            revisions_to_keep: Number of recent revision images to keep
        """
        self.images = images
        self.revisions_to_keep = revisions_to_keep

    async def protected_image_ids(self, references: List[ImageReference]) -> Set[str]:
        """IDs of the images the given tags currently point at."""
        protected: Set[str] = set()
        for reference in references:
            image_id = await self.images.image_id(reference)
            if image_id:
                protected.add(image_id)
        return protected

    def sort_images_by_created(self, images: List[Any]) -> List[Any]:
        """
        Sort images by creation date, newest first.

        Args:
            images: List of Docker image objects

        Returns:
            Sorted list of images
        """

        def get_created_time(image: Any) -> datetime:
            created = image.attrs.get("Created", "") if image.attrs else ""
            if not created:
                return datetime.min
            try:
                # Docker reports nanoseconds and a zone suffix; seconds suffice
                return datetime.fromisoformat(created[:19])
            except ValueError:
                return datetime.min

        return sorted(images, key=get_created_time, reverse=True)

    async def cleanup_repository(
        self, repository_path: str, protected_tags: List[ImageReference]
    ) -> int:
        """
        Remove old revision tags of one repository.

        Args:
            repository_path: registry/repository to clean
            protected_tags: Tags whose images must survive

        Returns:
            Number of tags removed
        """
        protected_ids = await self.protected_image_ids(protected_tags)
        protected_names = {str(tag) for tag in protected_tags}
        images = self.sort_images_by_created(await self.images.list_tags(repository_path))

        kept = 0
        removed = 0
        for image in images:
            if image.id in protected_ids:
                logger.debug(f"Keeping {image.tags} - referenced by a floating tag")
                continue

            if kept < self.revisions_to_keep:
                kept += 1
                logger.debug(f"Keeping {image.tags} ({kept}/{self.revisions_to_keep})")
                continue

            for tag in image.tags:
                if not tag.startswith(f"{repository_path}:") or tag in protected_names:
                    continue
                try:
                    logger.info(f"Removing old image tag: {tag}")
                    await self.images.remove(tag)
                    removed += 1
                except (APIError, DeployerError) as e:
                    logger.warning(f"Failed to remove {tag}: {e}")

        return removed

    async def cleanup(
        self, repository_path: str, protected_tags: List[ImageReference]
    ) -> Dict[str, int]:
        """
        Prune dangling images, then old revision tags.

        Returns:
            Counts of removed dangling images and revision tags
        """
        logger.info(f"Cleaning up local images for {repository_path}")
        results = {"dangling": 0, "revisions": 0}

        results["dangling"] = await self.images.prune_dangling()
        if results["dangling"]:
            logger.info(f"Removed {results['dangling']} dangling images")
        else:
            logger.info("No dangling images to remove")

        results["revisions"] = await self.cleanup_repository(repository_path, protected_tags)
        logger.info(f"Removed {results['revisions']} old revision tags of {repository_path}")
        return results
