"""
Docker registry client — digest resolution and image export via the docker CLI.

Uses the docker CLI, never the Docker API directly:

  resolve   docker buildx imagetools inspect <ref> --format '{{json .Manifest}}'
  fetch     docker pull <name@digest>  then  docker save -o <dest> <name@digest>

Pull and save share one deadline, so a retrieval never runs longer than
its timeout.

The installer runs ``docker compose up`` against digest-pinned images,
so the offline host must keep the digest across ``docker save`` /
``docker load``.  That holds on Docker Engine 25+ with the containerd
image store (OCI archives carry the index digest); older engines drop
RepoDigests on load and compose would try to pull.
"""

from __future__ import annotations

import json
import logging
import shutil
import subprocess
import time
from pathlib import Path

from installforge.adapters.base import RegistryClient, RegistryError

logger = logging.getLogger(__name__)


def run_docker(*args: str, timeout: float = 60) -> subprocess.CompletedProcess[str]:
    """Run a docker command and return the result."""
    return subprocess.run(
        ["docker", *args],
        capture_output=True,
        text=True,
        timeout=timeout,
    )


class DockerCliRegistryClient(RegistryClient):
    """Registry client backed by the local docker CLI."""

    @property
    def name(self) -> str:
        return "docker"

    def is_available(self) -> bool:
        return shutil.which("docker") is not None

    def _run(self, reference: str, *args: str, timeout: float) -> str:
        if timeout <= 0:
            raise RegistryError(reference, f"docker {args[0]} timed out before it started")
        try:
            result = run_docker(*args, timeout=timeout)
        except subprocess.TimeoutExpired as e:
            raise RegistryError(reference, f"docker {args[0]} timed out after {timeout:g}s") from e
        except FileNotFoundError as e:
            raise RegistryError(reference, "docker CLI not found") from e

        if result.returncode != 0:
            detail = (result.stderr or result.stdout).strip().splitlines()
            raise RegistryError(
                reference,
                detail[-1] if detail else f"docker {args[0]} exited {result.returncode}",
            )
        return result.stdout

    def resolve_digest(self, reference: str, *, timeout: float) -> str:
        out = self._run(
            reference,
            "buildx", "imagetools", "inspect", reference, "--format", "{{json .Manifest}}",
            timeout=timeout,
        )
        try:
            digest = json.loads(out).get("digest", "")
        except (json.JSONDecodeError, AttributeError) as e:
            raise RegistryError(reference, "unexpected imagetools output") from e
        if not digest:
            raise RegistryError(reference, "registry returned no digest")
        logger.debug("Resolved %s → %s", reference, digest)
        return digest

    def fetch_image(self, reference: str, digest: str, dest: Path, *, timeout: float) -> int:
        deadline = time.monotonic() + timeout
        self._run(reference, "pull", "--quiet", reference, timeout=timeout)
        self._run(reference, "save", "-o", str(dest), reference, timeout=deadline - time.monotonic())
        if not dest.is_file():
            raise RegistryError(reference, f"docker save produced no file at {dest}")
        size = dest.stat().st_size
        logger.debug("Saved %s (%d bytes)", reference, size)
        return size
