"""
Pytest configuration and fixtures for push-deployer tests.

The fake adapters keep a local image store, a registry and a cluster in
memory so that pipeline runs can be checked end to end against the tag and
rollback rules.
"""

import hashlib
from typing import Dict, List, Optional

import pytest

from push_deployer.config.settings import DeployerConfig
from push_deployer.exceptions import LocalFailure, OrchestratorError, PublishFailure
from push_deployer.kubernetes import RolloutStatus
from push_deployer.models import ImageReference, Revision


class FakeImages:
    """In-memory stand-in for DockerImages: a local image store plus a registry."""

    def __init__(self) -> None:
        self.local: Dict[str, str] = {}
        self.registry: Dict[str, str] = {}
        self.calls: List[str] = []
        self.fail_build = False
        self.skip_store_after_build = False
        self.fail_push: Optional[str] = None
        # image id -> revision it was built from
        self.built: Dict[str, str] = {}

    async def build(self, context, image, dockerfile="Dockerfile", build_args=None) -> str:
        self.calls.append(f"build {image}")
        if self.fail_build:
            raise LocalFailure("Docker build failed: step 3/7 returned 1")
        # Same revision always builds to the same image
        image_id = "sha256:" + hashlib.sha256(image.tag.encode()).hexdigest()
        self.built[image_id] = image.tag
        if not self.skip_store_after_build:
            self.local[str(image)] = image_id
        return image_id

    async def image_id(self, image: ImageReference) -> Optional[str]:
        return self.local.get(str(image))

    async def exists(self, image: ImageReference) -> bool:
        return str(image) in self.local

    async def tag(self, source: ImageReference, target: ImageReference) -> None:
        self.calls.append(f"tag {source.tag} {target.tag}")
        if str(source) not in self.local:
            raise LocalFailure(f"Cannot tag {target}: {source} does not exist")
        self.local[str(target)] = self.local[str(source)]

    async def push(self, image: ImageReference) -> None:
        self.calls.append(f"push {image.tag}")
        if self.fail_push and image.tag == self.fail_push:
            raise PublishFailure(f"Push of {image} failed: connection refused")
        self.registry[str(image)] = self.local[str(image)]

    async def pull(self, image: ImageReference) -> bool:
        if str(image) not in self.registry:
            return False
        self.local[str(image)] = self.registry[str(image)]
        return True

    async def list_tags(self, repository_path: str) -> list:
        return []

    async def remove(self, reference: str) -> None:
        self.local.pop(reference, None)

    async def prune_dangling(self) -> int:
        return 0

    def registry_revision(self, tag: str) -> Optional[str]:
        """Short revision the registry tag points at, if any."""
        image_id = self.registry.get(f"localhost:5000/web:{tag}")
        return self.built.get(image_id) if image_id else None

    def local_revision(self, tag: str) -> Optional[str]:
        image_id = self.local.get(f"localhost:5000/web:{tag}")
        return self.built.get(image_id) if image_id else None


class FakeKubectl:
    """In-memory Deployment with a rollout history."""

    def __init__(self, image: Optional[str] = None) -> None:
        self.generations: List[str] = [image] if image else []
        self.calls: List[str] = []
        self.rollout_result = RolloutStatus.HEALTHY
        self.fail_set_image = False
        self.fail_undo = False

    @property
    def image(self) -> Optional[str]:
        return self.generations[-1] if self.generations else None

    async def current_image(self, deployment, container, namespace) -> Optional[str]:
        return self.image

    async def set_image(self, deployment, container, image, namespace) -> None:
        self.calls.append(f"set-image {image}")
        if self.fail_set_image:
            raise OrchestratorError("kubectl set image failed: deployments.apps not found", 1)
        if image != self.image:
            self.generations.append(image)

    async def rollout_status(self, deployment, namespace, timeout) -> RolloutStatus:
        self.calls.append("rollout-status")
        return self.rollout_result

    async def rollout_undo(self, deployment, namespace) -> None:
        self.calls.append("rollout-undo")
        if self.fail_undo or len(self.generations) < 2:
            raise OrchestratorError("kubectl rollout undo failed: no rollout history found", 1)
        self.generations.pop()


class FakeSource:
    """Git working copy that is always able to check out what it is asked for."""

    def __init__(self) -> None:
        self.synced: List[str] = []
        self.fail = False

    async def sync(self, branch: str, revision: Revision) -> str:
        if self.fail:
            raise LocalFailure(f"Revision {revision.short} is not on origin/{branch}", 1)
        self.synced.append(revision.full)
        return revision.full


@pytest.fixture(autouse=True)
def audit_log(tmp_path, monkeypatch):
    """Keep audit entries out of /var/log."""
    path = tmp_path / "audit.jsonl"
    monkeypatch.setattr("push_deployer.audit.AUDIT_LOG_PATH", path)
    return path


@pytest.fixture
def config(tmp_path):
    """Configuration for a 'web' workload in the 'prod' namespace."""
    return DeployerConfig.from_dict(
        {
            "workload": {
                "registry_url": "localhost:5000",
                "name": "web",
                "namespace": "prod",
                "source_repo_path": str(tmp_path / "src"),
            },
            "gateway": {"webhook_secret": "test-secret", "rate_limit_enabled": False},
            "paths": {
                "state_dir": str(tmp_path / "state"),
                "log_dir": str(tmp_path / "log"),
                "audit_log": str(tmp_path / "audit.jsonl"),
            },
        },
        environ={},
    )


@pytest.fixture
def fake_images():
    return FakeImages()


@pytest.fixture
def fake_kubectl():
    return FakeKubectl()


@pytest.fixture
def fake_source():
    return FakeSource()
