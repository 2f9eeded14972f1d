"""
Tests for Docker image cleanup service.
"""

from unittest.mock import AsyncMock, Mock

import pytest
from docker.errors import APIError

from push_deployer.docker_image_cleanup import DockerImageCleanup
from push_deployer.models import ImageReference

REPO = "localhost:5000/web"


def image(image_id, created, *tags):
    mock = Mock()
    mock.id = image_id
    mock.tags = [f"{REPO}:{tag}" for tag in tags]
    mock.attrs = {"Created": created}
    return mock


def ref(tag):
    return ImageReference(registry="localhost:5000", repository="web", tag=tag)


class TestDockerImageCleanup:
    """Test Docker image cleanup functionality."""

    @pytest.fixture
    def mock_images(self):
        """Image adapter with floating tags on the two newest revisions."""
        images = AsyncMock()
        floating = {"latest": "sha256:e", "last-stable": "sha256:d", "e4f5a6b": "sha256:e"}
        images.image_id.side_effect = lambda reference: floating.get(reference.tag)
        images.prune_dangling.return_value = 1
        images.list_tags.return_value = [
            image("sha256:a", "2025-01-01T10:00:00.123456789Z", "0000001"),
            image("sha256:b", "2025-01-02T10:00:00Z", "0000002"),
            image("sha256:c", "2025-01-03T10:00:00Z", "0000003"),
            image("sha256:d", "2025-01-04T10:00:00Z", "0000004", "last-stable"),
            image("sha256:e", "2025-01-05T10:00:00Z", "e4f5a6b", "latest"),
        ]
        return images

    @pytest.fixture
    def protected(self):
        return [ref("e4f5a6b"), ref("latest"), ref("last-stable")]

    def test_sort_images_by_created(self):
        """Test sorting images by creation date."""
        cleanup_service = DockerImageCleanup(AsyncMock())
        old = image("sha256:a", "2025-01-01T10:00:00Z")
        new = image("sha256:b", "2025-01-02T10:00:00Z")
        undated = image("sha256:c", "")

        assert cleanup_service.sort_images_by_created([old, undated, new]) == [new, old, undated]

    @pytest.mark.asyncio
    async def test_keeps_floating_tags_and_recent_revisions(self, mock_images, protected):
        cleanup_service = DockerImageCleanup(mock_images, revisions_to_keep=2)

        removed = await cleanup_service.cleanup_repository(REPO, protected)

        # d and e are protected; c and b fill the two slots; a goes
        assert removed == 1
        mock_images.remove.assert_awaited_once_with(f"{REPO}:0000001")

    @pytest.mark.asyncio
    async def test_nothing_removed_within_retention(self, mock_images, protected):
        cleanup_service = DockerImageCleanup(mock_images, revisions_to_keep=3)

        assert await cleanup_service.cleanup_repository(REPO, protected) == 0
        mock_images.remove.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_remove_failure_is_logged_not_raised(self, mock_images, protected):
        mock_images.remove.side_effect = APIError("image is being used by a container")
        cleanup_service = DockerImageCleanup(mock_images, revisions_to_keep=0)

        removed = await cleanup_service.cleanup_repository(REPO, protected)

        assert removed == 0
        assert mock_images.remove.await_count == 3

    @pytest.mark.asyncio
    async def test_cleanup_reports_counts(self, mock_images, protected):
        cleanup_service = DockerImageCleanup(mock_images, revisions_to_keep=1)

        results = await cleanup_service.cleanup(REPO, protected)

        assert results == {"dangling": 1, "revisions": 2}
        mock_images.list_tags.assert_awaited_once_with(REPO)
