# node_deployer/cluster/image_builder.py
"""
Image builds from a GitHub repository.

The Docker daemon clones the repository itself (remote build context). The
credential is embedded in the context URL for the duration of the build
call only and never logged or stored.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

import docker
from docker.errors import APIError, BuildError as DockerBuildError, DockerException

from node_deployer.core.errors import BuildError, FatalClusterError, TransientClusterError
from node_deployer.core.models import Deployment

logger = logging.getLogger(__name__)


def build_context_url(deployment: Deployment, token: Optional[str] = None) -> str:
    """Git build context: ``https://github.com/owner/repo.git#branch:subdir``."""
    source = deployment.source
    credentials = f"x-access-token:{token}@" if token else ""
    url = f"https://{credentials}github.com/{source.owner}/{source.name}.git"

    fragment = source.branch or ""
    context = (deployment.spec.build.build_context or ".").strip("/")
    if context and context != ".":
        fragment = f"{fragment}:{context}"
    return f"{url}#{fragment}" if fragment else url


def redact(text: str, token: Optional[str]) -> str:
    """Blank out a credential that Docker may have echoed back."""
    if not token or not text:
        return text
    return text.replace(token, "***")


class ImageBuilder(ABC):

    @abstractmethod
    def build(self, deployment: Deployment, token: Optional[str] = None) -> str:
        """
        Build the deployment image and return its reference.

        Raises:
            BuildError: the Dockerfile failed to build
            TransientClusterError: builder unreachable
            FatalClusterError: builder rejected the request
        """
        raise NotImplementedError


class DockerImageBuilder(ImageBuilder):
    """ImageBuilder using a Docker daemon (local socket or ``base_url``)."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        push: bool = False,
        timeout: int = 600,
        docker_client: Optional[docker.DockerClient] = None,
    ):
        self._base_url = base_url
        self._push = push
        self._timeout = timeout
        self._client = docker_client

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                if self._base_url:
                    self._client = docker.DockerClient(base_url=self._base_url, timeout=self._timeout)
                else:
                    self._client = docker.from_env(timeout=self._timeout)
            except DockerException as e:
                raise TransientClusterError(f"Docker daemon unavailable: {e}") from e
            logger.info("[builder] connected to Docker daemon")
        return self._client

    def build(self, deployment: Deployment, token: Optional[str] = None) -> str:
        build = deployment.spec.build
        image = build.image_reference

        logger.info(
            f"[builder] building {image} from {deployment.source.full_name}@{deployment.source.branch}"
        )
        try:
            self.client.images.build(
                path=build_context_url(deployment, token),
                dockerfile=build.dockerfile,
                tag=image,
                buildargs=dict(build.build_args) or None,
                rm=True,
                pull=True,
                timeout=self._timeout,
            )
        # daemon messages may echo the credentialed context URL
        except DockerBuildError as e:
            raise BuildError(f"Image build failed for {image}: {redact(e.msg, token)}") from None
        except APIError as e:
            raise self._classify(e, "build", token) from None
        except DockerException as e:
            raise TransientClusterError(f"Docker daemon unavailable: {redact(str(e), token)}") from None

        logger.info(f"[builder] ✅ built {image}")

        if self._push and build.registry_url:
            self._push_image(image)
        return image

    def _push_image(self, image: str) -> None:
        repository, _, tag = image.rpartition(":")
        try:
            for chunk in self.client.images.push(repository, tag=tag, stream=True, decode=True):
                if "error" in chunk:
                    raise BuildError(f"Push of {image} failed: {chunk['error']}")
        except APIError as e:
            raise self._classify(e, "push") from e
        except DockerException as e:
            raise TransientClusterError(f"Docker daemon unavailable: {e}") from e
        logger.info(f"[builder] pushed {image}")

    @staticmethod
    def _classify(exc: APIError, action: str, token: Optional[str] = None):
        status = exc.status_code or 0
        detail = redact(str(exc.explanation or exc), token)
        if status == 0 or status >= 500 or status == 429:
            return TransientClusterError(f"Docker {action} error: {detail}")
        return FatalClusterError(f"Docker {action} rejected: {detail}")
