# ABOUTME: Checks that a service image tag exists in the container registry
# ABOUTME: Runs `docker manifest inspect` and applies a strictness policy when the tool is missing

"""Registry Verifier."""

from __future__ import annotations

import shutil
import subprocess
from typing import TYPE_CHECKING

import structlog

from gitops_promoter.errors import ArtifactNotFound, ExternalToolUnavailable
from gitops_promoter.models import Service, StrictnessPolicy

if TYPE_CHECKING:
    from gitops_promoter.config import PromoterSettings

logger = structlog.get_logger(__name__)


class RegistryVerifier:
    """
    Confirms an image reference exists before any record is touched.

    Only the manifest is fetched; no layers are pulled. When the check tool
    is missing or hangs, ``policy`` decides: STRICT raises
    ExternalToolUnavailable, WARN_AND_PROCEED logs a warning and treats the
    image as present.
    """

    def __init__(
        self,
        namespace: str = "8060633493",
        prefix: str = "craftista",
        policy: StrictnessPolicy = StrictnessPolicy.WARN_AND_PROCEED,
        docker_bin: str = "docker",
        timeout: float = 60.0,
    ) -> None:
        self.namespace = namespace
        self.prefix = prefix
        self.policy = policy
        self.docker_bin = docker_bin
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: PromoterSettings) -> RegistryVerifier:
        return cls(
            namespace=settings.registry_namespace,
            prefix=settings.image_prefix,
            policy=settings.strictness,
            docker_bin=settings.docker_bin,
            timeout=settings.registry_timeout,
        )

    def image_reference(self, service: Service | str, tag: str) -> str:
        return f"{self.namespace}/{self.prefix}-{service}:{tag}"

    def _unavailable(self, image: str, reason: str) -> bool:
        if self.policy is StrictnessPolicy.STRICT:
            raise ExternalToolUnavailable(
                f"Cannot verify {image}: {reason}",
                hint="Install the docker CLI or set GITOPS_STRICTNESS=warn-and-proceed",
            )
        logger.warning("Assuming image exists", image=image, reason=reason)
        return True

    def exists(self, service: Service | str, image: str) -> bool:
        """
        True if the registry has ``image``.

        Raises:
            ExternalToolUnavailable: Tool missing or timed out under STRICT.
        """
        tool = shutil.which(self.docker_bin)
        if tool is None:
            return self._unavailable(image, f"{self.docker_bin} not found on PATH")

        log = logger.bind(service=str(service), image=image)
        log.info("registry_check")
        try:
            result = subprocess.run(
                [tool, "manifest", "inspect", image],
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            return self._unavailable(image, f"registry check timed out after {self.timeout}s")

        if result.returncode != 0:
            log.info("registry_check_failed", stderr=result.stderr.strip()[:200])
            return False
        return True

    def verify(self, service: Service | str, tag: str) -> str:
        """
        Check ``tag`` for ``service``.

        Returns:
            The verified image reference.

        Raises:
            ArtifactNotFound: The registry definitively lacks the image.
            ExternalToolUnavailable: Tool missing or timed out under STRICT.
        """
        image = self.image_reference(service, tag)
        if not self.exists(service, image):
            raise ArtifactNotFound(image)
        logger.info("registry_check_passed", image=image)
        return image
