"""
Container build engine adapter.

Builds one architecture's image with a podman compatible CLI and pushes it
to the destination registry. The engine owns layer caching and build graphs;
this adapter only runs it, classifies its failures and reports the pushed
digest.
"""
from __future__ import annotations

import logging
import subprocess
import tempfile
import threading
from pathlib import Path
from typing import List, Optional, Protocol, Set

from .errors import BuildLogicError, PipelineCancelled, TransientPushError
from .models import ARCHITECTURE_PLATFORMS, Credential, ImageReference
from .settings import Settings

__all__ = ["BuildCapability", "PodmanBuilder", "split_destination", "is_transient_push_failure"]

logger = logging.getLogger(__name__)

# stderr fragments of push failures that are worth one more attempt
TRANSIENT_PUSH_MARKERS = (
    "429",
    "toomanyrequests",
    "too many requests",
    "rate limit",
    "connection reset",
    "connection refused",
    "i/o timeout",
    "tls handshake timeout",
    "502 bad gateway",
    "503 service unavailable",
    "504 gateway timeout",
    "broken pipe",
)


class BuildCapability(Protocol):
    """Protocol for the external build-and-push capability."""

    def build(self, dockerfile: Path, arch_tag: str, destination: str,
              credential: Credential, *, context_dir: Optional[Path] = None) -> ImageReference:
        """
        Build ``dockerfile`` for ``arch_tag`` and push it to ``destination``.

        May run for minutes. Calling it again after a TransientPushError
        for the same destination may only repeat the push.

        Returns:
            ImageReference pointing at the pushed digest

        Raises:
            TransientPushError: Push failed in a way worth retrying
            BuildLogicError: Build or push failed permanently
            PipelineCancelled: cancel() was called while building
        """
        ...

    def cancel(self) -> None:
        """Stop all in-flight builds."""
        ...


def split_destination(destination: str) -> tuple[str, str]:
    """
    Split ``registry[:port]/path:tag`` into repository and tag.

    Examples:
        >>> split_destination("localhost:5000/addons/weather-x:1.0.0-x86-64")
        ("localhost:5000/addons/weather-x", "1.0.0-x86-64")
    """
    slash = destination.rfind("/")
    colon = destination.rfind(":")
    if colon <= slash:
        raise ValueError(f"Destination must carry a tag: {destination}")
    return destination[:colon], destination[colon + 1:]


def is_transient_push_failure(stderr: str) -> bool:
    text = stderr.lower()
    return any(marker in text for marker in TRANSIENT_PUSH_MARKERS)


class PodmanBuilder:
    """
    Build capability backed by ``podman build`` + ``podman push``.

    Each build spawns its own processes, so concurrent builds for different
    architectures do not share state apart from the process registry used
    for cancellation.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.tool = settings.build_tool
        self._processes: Set[subprocess.Popen] = set()
        self._lock = threading.Lock()
        self._cancelled = threading.Event()
        # Destinations built locally whose push has not succeeded yet
        self._unpushed: Set[str] = set()

    def build(self, dockerfile: Path, arch_tag: str, destination: str,
              credential: Credential, *, context_dir: Optional[Path] = None) -> ImageReference:
        dockerfile = Path(dockerfile)
        context_dir = Path(context_dir) if context_dir else dockerfile.parent
        platform = ARCHITECTURE_PLATFORMS[arch_tag]
        repository, _ = split_destination(destination)

        with self._lock:
            already_built = destination in self._unpushed
        if already_built:
            logger.info(f"Image {destination} already built, retrying the push only")
        else:
            logger.info(f"Building {dockerfile.name} - arch {arch_tag}")
            returncode, stderr = self._run([
                self.tool, "build",
                "--platform", platform,
                "-f", str(dockerfile),
                "-t", destination,
                str(context_dir),
            ])
            if returncode != 0:
                raise BuildLogicError(f"Failed to build {dockerfile.name} - arch {arch_tag}: {_tail(stderr)}")
            with self._lock:
                self._unpushed.add(destination)

        logger.info(f"Upload image {destination}")
        with tempfile.TemporaryDirectory(prefix="addon-push-") as tmp_dir:
            digest_file = Path(tmp_dir) / "digest"
            returncode, stderr = self._run([
                self.tool, "push",
                f"--creds={credential.registry_creds}",
                "--digestfile", str(digest_file),
                destination,
            ], redact=credential.registry_token)
            if returncode != 0:
                message = f"Failed to push {destination}: {_tail(stderr)}"
                if is_transient_push_failure(stderr):
                    raise TransientPushError(message)
                with self._lock:
                    self._unpushed.discard(destination)
                raise BuildLogicError(message)

            digest = digest_file.read_text().strip() if digest_file.exists() else ""

        with self._lock:
            self._unpushed.discard(destination)

        if not digest.startswith("sha256:"):
            raise BuildLogicError(f"Push of {destination} did not report a digest")

        return ImageReference(tag=arch_tag, ref=f"{repository}@{digest}", size=self._image_size(destination))

    def cancel(self) -> None:
        self._cancelled.set()
        with self._lock:
            running = list(self._processes)
        for process in running:
            logger.debug(f"Terminating build process {process.pid}")
            process.terminate()

    def _image_size(self, image: str) -> Optional[int]:
        returncode, stdout = self._run(
            [self.tool, "image", "inspect", image, "--format", "{{.Size}}"], capture="stdout"
        )
        if returncode != 0:
            return None
        try:
            return int(stdout.strip())
        except ValueError:
            return None

    def _run(self, cmd: List[str], *, redact: Optional[str] = None, capture: str = "stderr") -> tuple[int, str]:
        """Run a build engine command; return (returncode, captured stream)."""
        if self._cancelled.is_set():
            raise PipelineCancelled("Build cancelled before start")

        shown = " ".join(cmd)
        if redact:
            shown = shown.replace(redact, "***")
        logger.debug(f"Running: {shown}")

        process = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
        with self._lock:
            self._processes.add(process)
        try:
            stdout, stderr = process.communicate(timeout=self.settings.build_timeout_s)
        except subprocess.TimeoutExpired:
            process.kill()
            process.communicate()
            raise BuildLogicError(f"{cmd[1]} timed out after {self.settings.build_timeout_s:g}s")
        finally:
            with self._lock:
                self._processes.discard(process)

        if self._cancelled.is_set():
            raise PipelineCancelled("Build cancelled")

        return process.returncode, stdout if capture == "stdout" else stderr


def _tail(text: str, lines: int = 5) -> str:
    return "\n".join(text.strip().splitlines()[-lines:]) or "no output"
