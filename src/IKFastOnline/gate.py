# === NAVMAP v1 ===
# {
#   "module": "IKFastOnline.gate",
#   "purpose": "Gate artifact downloads on a successfully completed run; fetch, verify, deliver",
#   "sections": [
#     {"id": "fetchedfile", "name": "FetchedFile", "anchor": "class-fetchedfile", "kind": "class"},
#     {"id": "downloadgate", "name": "DownloadGate", "anchor": "class-downloadgate", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Download gate for job outputs.

:class:`DownloadGate` is the only way to reach the files a job produced. It is
open exactly when the coordinator's last mapped state is ``completed`` for a
known run id. The gate holds no lock flag of its own: :meth:`is_unlocked` is
read from the coordinator on every call, so a new trigger or a reset closes
the gate before any observer runs. The gate also subscribes ahead of other
observers to drop the artifact listings it cached for the previous run.

A fetch lists the run's artifacts, picks the well-known bundle, downloads and
opens it, extracts the requested member, and verifies it against the digest
recorded in the bundle's build log (or the run log archive when the bundle
carries none).
"""

from __future__ import annotations

import logging
import posixpath
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .bundles import find_member, open_bundle, read_log_archive, read_member
from .checksums import ArtifactVerifier, VerificationResult
from .errors import ArtifactNotFoundError, CorruptBundleError, GateClosedError, RemoteAPIError
from .lifecycle import JobLifecycleCoordinator
from .models import Artifact, JobRun, LifecycleState
from .network.client import RemoteJobClient
from .settings import ArtifactSettings

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class FetchedFile:
    """A file delivered by :meth:`DownloadGate.fetch_named_file`."""

    filename: str
    content: bytes
    log_text: Optional[str]
    verification: VerificationResult
    artifact: Artifact

    @property
    def size(self) -> int:
        return len(self.content)

    @property
    def verified(self) -> bool:
        return self.verification.verified


class DownloadGate:
    """Authority on whether artifacts may be fetched, and the fetch sequence itself."""

    def __init__(
        self,
        coordinator: JobLifecycleCoordinator,
        client: RemoteJobClient,
        verifier: Optional[ArtifactVerifier] = None,
        *,
        artifacts: Optional[ArtifactSettings] = None,
    ) -> None:
        self._coordinator = coordinator
        self._client = client
        self._settings = artifacts or ArtifactSettings()
        self._verifier = verifier or ArtifactVerifier(self._settings.checksum_path_token)
        self._listing: Optional[Tuple[int, List[Artifact]]] = None
        self._bundles: Dict[int, bytes] = {}
        self._unsubscribe = coordinator.on_state_change(self._on_state_change, first=True)

    @property
    def bundle_name(self) -> str:
        return self._settings.bundle_name

    def close(self) -> None:
        """Detach from the coordinator and drop cached downloads."""
        self._unsubscribe()
        self._drop_cache()

    def is_unlocked(self) -> bool:
        return (
            self._coordinator.state is LifecycleState.COMPLETED
            and self._coordinator.run_id is not None
        )

    def _on_state_change(
        self,
        previous: Optional[LifecycleState],
        current: Optional[LifecycleState],
        run: Optional[JobRun],
    ) -> None:
        if current is LifecycleState.COMPLETED:
            logger.debug("Download gate unlocked", extra={"stage": "gate", "run_id": run and run.id})
            return
        if previous is LifecycleState.COMPLETED:
            logger.debug("Download gate locked", extra={"stage": "gate"})
        self._drop_cache()

    def _drop_cache(self) -> None:
        self._listing = None
        self._bundles.clear()

    def _require_unlocked(self) -> int:
        if not self.is_unlocked():
            state = self._coordinator.state
            raise GateClosedError(
                "Downloads are locked until the job completes successfully "
                f"(current state: {state.value if state else 'idle'})"
            )
        return int(self._coordinator.run_id)  # type: ignore[arg-type]

    def _ensure_current(self, run_id: int) -> None:
        if not self.is_unlocked() or self._coordinator.run_id != run_id:
            self._drop_cache()
            raise GateClosedError(
                f"Job state changed while fetching outputs of run {run_id}; discarded"
            )

    async def list_artifacts(self) -> List[Artifact]:
        """Artifacts attached to the completed run (cached per run)."""

        run_id = self._require_unlocked()
        if self._listing is not None and self._listing[0] == run_id:
            return list(self._listing[1])
        artifacts = await self._client.list_artifacts(run_id)
        self._ensure_current(run_id)
        self._listing = (run_id, list(artifacts))
        return list(artifacts)

    async def find_bundle(self) -> Artifact:
        run_id = self._require_unlocked()
        matches = [a for a in await self.list_artifacts() if a.name == self.bundle_name]
        if not matches:
            raise ArtifactNotFoundError(
                f"Artifact '{self.bundle_name}' was not produced by run {run_id}",
                artifact_name=self.bundle_name,
            )
        live = [a for a in matches if not a.expired]
        if not live:
            raise ArtifactNotFoundError(
                f"Artifact '{self.bundle_name}' of run {run_id} has expired",
                artifact_name=self.bundle_name,
                reason="expired",
            )
        return live[0]

    async def download_bundle(self) -> Tuple[Artifact, bytes]:
        """Download the well-known bundle as raw zip bytes."""

        run_id = self._require_unlocked()
        artifact = await self.find_bundle()
        data = self._bundles.get(artifact.id)
        if data is None:
            logger.info(
                "Downloading %s (%d bytes)",
                artifact.name,
                artifact.size_in_bytes,
                extra={"stage": "download", "run_id": run_id, "artifact": artifact.name},
            )
            data = await self._client.download_artifact(artifact.id)
            self._ensure_current(run_id)
            self._bundles[artifact.id] = data
        return artifact, data

    async def fetch_named_file(self, filename: str) -> FetchedFile:
        """Fetch ``filename`` from the bundle and verify it.

        Raises:
            GateClosedError: The job has not completed successfully, or moved
                on to another run during the fetch.
            ArtifactNotFoundError: The bundle, or ``filename`` inside it, is missing.
            EmptyArtifactError: The file is present but empty.
            ChecksumMismatchError: The file's digest differs from the logged one.
        """

        run_id = self._require_unlocked()
        artifact, data = await self.download_bundle()
        with open_bundle(data) as archive:
            member = find_member(archive, filename)
            if member is None:
                raise ArtifactNotFoundError(
                    f"'{filename}' is missing from artifact '{artifact.name}'",
                    artifact_name=artifact.name,
                    filename=filename,
                )
            content = read_member(archive, member)
            log_member = find_member(archive, self._settings.log_filename)
            log_text = (
                read_member(archive, log_member).decode("utf-8", errors="replace")
                if log_member
                else None
            )

        checksummed = self._is_checksummed(member)
        if checksummed and log_text is None:
            log_text = await self._run_log_text(run_id)
            self._ensure_current(run_id)

        verification = self._verifier.verify(content, log_text if checksummed else None)
        if verification.error is not None:
            logger.error(
                str(verification.error),
                extra={"stage": "verify", "run_id": run_id, "artifact": member},
            )
            raise verification.error
        logger.info(
            "Fetched %s (%d bytes, %s)",
            member,
            verification.size,
            verification.status,
            extra={"stage": "verify", "run_id": run_id, "artifact": member},
        )
        return FetchedFile(
            filename=filename,
            content=content,
            log_text=log_text,
            verification=verification,
            artifact=artifact,
        )

    def _is_checksummed(self, member: str) -> bool:
        token = self._verifier.checksum_path_token
        return member == token or posixpath.basename(member) == posixpath.basename(token)

    async def _run_log_text(self, run_id: int) -> Optional[str]:
        try:
            return read_log_archive(await self._client.get_logs(run_id))
        except (RemoteAPIError, CorruptBundleError) as exc:
            logger.warning(
                "Run logs unavailable for checksum lookup: %s",
                exc,
                extra={"stage": "verify", "run_id": run_id},
            )
            return None


__all__ = ["DownloadGate", "FetchedFile"]
