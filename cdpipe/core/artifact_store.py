"""Content-addressed, immutable artifact byte store.

Storage layout: {base_path}/{sha256[0:2]}/{sha256[2:4]}/{sha256}.dat
No delete method; blobs are immutable once stored.  An artifact's file
tree is stored as one blob per file plus a manifest blob mapping relative
paths to blob addresses; the manifest address is the artifact location.
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Mapping
from pathlib import Path

from cdpipe.core.hasher import canonical_json_bytes, sha256_hex
from cdpipe.models.artifacts import ArtifactManifest


class ArtifactIntegrityError(RuntimeError):
    """Raised when a stored blob's hash does not match its address."""


class ContentAddressedStore:
    """SHA-256 keyed, immutable blob store.

    Storing the same content twice is a no-op (idempotent). There is no
    update or delete.

    Parameters
    ----------
    base_path:
        Root directory for blob storage.
    """

    def __init__(self, base_path: Path) -> None:
        self._base = Path(base_path)
        self._base.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _extract_digest(content_address: str) -> str:
        """Strip the ``sha256:`` prefix from a content address, if present."""
        return content_address.removeprefix("sha256:")

    def _blob_path(self, sha256_digest: str) -> Path:
        return self._base / sha256_digest[:2] / sha256_digest[2:4] / f"{sha256_digest}.dat"

    # ------------------------------------------------------------------
    # Blobs
    # ------------------------------------------------------------------

    def store(self, data: bytes) -> str:
        """Store bytes and return their ``sha256:<hex>`` address.

        If the content already exists, verifies integrity instead of
        overwriting.
        """
        digest = sha256_hex(data)
        path = self._blob_path(digest)

        if path.exists():
            if not self.verify(digest):
                raise ArtifactIntegrityError(
                    f"Existing blob at {digest} failed integrity check"
                )
        else:
            path.parent.mkdir(parents=True, exist_ok=True)
            # Write-then-rename so a concurrent reader never sees a partial blob.
            tmp = path.with_name(f"{path.name}.{uuid.uuid4().hex}.tmp")
            tmp.write_bytes(data)
            tmp.replace(path)

        return f"sha256:{digest}"

    def retrieve(self, content_address: str) -> bytes:
        """Retrieve blob bytes by content address ("sha256:<hex>" or bare hex)."""
        digest = self._extract_digest(content_address)
        path = self._blob_path(digest)
        if not path.exists():
            raise FileNotFoundError(f"Blob not found: {content_address}")
        return path.read_bytes()

    def exists(self, content_address: str) -> bool:
        return self._blob_path(self._extract_digest(content_address)).exists()

    def verify(self, content_address: str) -> bool:
        """Re-hash stored data and compare against the content address."""
        digest = self._extract_digest(content_address)
        path = self._blob_path(digest)
        if not path.exists():
            return False
        return sha256_hex(path.read_bytes()) == digest

    # ------------------------------------------------------------------
    # File trees
    # ------------------------------------------------------------------

    def store_files(self, files: Mapping[str, bytes]) -> str:
        """Store a file tree; return the content address of its manifest."""
        manifest = ArtifactManifest(
            files={path: self.store(data) for path, data in sorted(files.items())}
        )
        return self.store(canonical_json_bytes(manifest.model_dump(mode="json")))

    def load_manifest(self, location: str) -> ArtifactManifest:
        return ArtifactManifest.model_validate(json.loads(self.retrieve(location)))

    def load_files(self, location: str) -> dict[str, bytes]:
        """Load every file of the tree stored under *location*."""
        manifest = self.load_manifest(location)
        files: dict[str, bytes] = {}
        for path, address in manifest.files.items():
            data = self.retrieve(address)
            if sha256_hex(data) != self._extract_digest(address):
                raise ArtifactIntegrityError(f"Blob for {path!r} failed integrity check")
            files[path] = data
        return files
