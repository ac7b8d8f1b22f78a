# === NAVMAP v1 ===
# {
#   "module": "IKFastOnline.checksums",
#   "purpose": "Size and SHA-256 integrity checks for downloaded artifacts against a digest mined from the build log",
#   "sections": [
#     {"id": "verificationresult", "name": "VerificationResult", "anchor": "class-verificationresult", "kind": "class"},
#     {"id": "artifactverifier", "name": "ArtifactVerifier", "anchor": "class-artifactverifier", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Checksum extraction and verification for downloaded job outputs.

The generator job writes a ``sha256sum``-style line into its build log::

    3f1a...e9  outputs/ikfast_solver.cpp

:class:`ArtifactVerifier` mines that digest from the log and compares it with
the digest of the bytes actually downloaded. It performs no I/O and keeps no
state. A missing reference digest is not an error: the result is reported as
valid but unverified, and only the size check applies.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from typing import Optional

from .errors import ChecksumMismatchError, EmptyArtifactError

DIGEST_LENGTH = 64

STATUS_VERIFIED = "verified"
STATUS_UNVERIFIED = "unverified"
STATUS_MISMATCH = "mismatch"


@dataclass(slots=True, frozen=True)
class VerificationResult:
    """Structured outcome of :meth:`ArtifactVerifier.verify`."""

    valid: bool
    size: int
    actual_digest: str
    expected_digest: Optional[str] = None
    error: Optional[ChecksumMismatchError] = None

    @property
    def verified(self) -> bool:
        return self.valid and self.expected_digest is not None

    @property
    def status(self) -> str:
        if not self.valid:
            return STATUS_MISMATCH
        return STATUS_VERIFIED if self.expected_digest is not None else STATUS_UNVERIFIED


class ArtifactVerifier:
    """Pure integrity checks for artifact bytes."""

    def __init__(self, checksum_path_token: str = "outputs/ikfast_solver.cpp") -> None:
        self.checksum_path_token = checksum_path_token
        self._pattern = re.compile(
            r"(?<![0-9a-f])([0-9a-f]{%d})\s+\*?%s(?![\w./-])"
            % (DIGEST_LENGTH, re.escape(checksum_path_token)),
            re.IGNORECASE,
        )

    @staticmethod
    def check_non_empty(blob: Optional[bytes]) -> int:
        """Return the size of ``blob``; raise :class:`EmptyArtifactError` when it is absent or empty."""

        if blob is None:
            raise EmptyArtifactError("Downloaded file is missing")
        if len(blob) == 0:
            raise EmptyArtifactError("Downloaded file is empty (0 bytes)")
        return len(blob)

    @staticmethod
    def compute_digest(blob: bytes) -> str:
        """Return the lowercase hex SHA-256 of ``blob``.

        Examples:
            >>> ArtifactVerifier.compute_digest(b"")[:8]
            'e3b0c442'
        """

        return hashlib.sha256(bytes(blob)).hexdigest()

    def extract_expected_digest(self, log_text: Optional[str]) -> Optional[str]:
        """Return the first digest recorded for the checksum path, or ``None``."""

        if not log_text:
            return None
        match = self._pattern.search(log_text)
        return match.group(1).lower() if match else None

    def verify(self, blob: Optional[bytes], log_text: Optional[str]) -> VerificationResult:
        """Check size, then compare against the logged digest when one exists.

        Raises :class:`EmptyArtifactError` for an empty blob. A digest mismatch
        is returned as an invalid result carrying the error, never raised.
        """

        size = self.check_non_empty(blob)
        actual = self.compute_digest(blob)  # type: ignore[arg-type]
        expected = self.extract_expected_digest(log_text)
        if expected is None or expected == actual.lower():
            return VerificationResult(True, size, actual, expected)
        error = ChecksumMismatchError(
            f"Checksum mismatch for {self.checksum_path_token}: expected {expected}, got {actual}",
            expected=expected,
            actual=actual,
        )
        return VerificationResult(False, size, actual, expected, error)


__all__ = [
    "ArtifactVerifier",
    "DIGEST_LENGTH",
    "STATUS_MISMATCH",
    "STATUS_UNVERIFIED",
    "STATUS_VERIFIED",
    "VerificationResult",
]
