"""
Artifact writer.

Writes an artifact set to ``<directory>/<system_id>/<revision>/<name>.json``.
A revision is immutable once written: writing identical bytes again is a
no-op, writing different bytes raises InconsistentState.
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional, Union

from ..exceptions import InconsistentState, StorageError
from ._common import canonical_json
from .signing import ArtifactSigner

if TYPE_CHECKING:
    from . import Artifact, ArtifactSet

logger = logging.getLogger(__name__)


def _atomic_write(path: Path, content: bytes) -> None:
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


class ArtifactWriter:
    """Persists artifact sets, optionally with detached signatures."""

    def __init__(self, signer: Optional[ArtifactSigner] = None):
        self.signer = signer

    @staticmethod
    def revision_dir(directory: Union[str, Path], system_id: str, revision: int) -> Path:
        return Path(directory) / system_id / str(revision)

    def write(self, artifact_set: "ArtifactSet", directory: Union[str, Path]) -> List[Path]:
        """
        Write every artifact of the set.

        Returns:
            Paths of the artifact files (signature files excluded)

        Raises:
            InconsistentState: If the revision already exists with different content
            StorageError: If the filesystem write fails
        """
        target = self.revision_dir(directory, artifact_set.system_id, artifact_set.revision)
        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create artifact directory {target}: {e}") from e

        for artifact in artifact_set:
            self._check_existing(target / artifact.filename, artifact)

        written: List[Path] = []
        for artifact in artifact_set:
            path = target / artifact.filename
            try:
                if not path.exists():
                    _atomic_write(path, artifact.content)
                if self.signer is not None:
                    signature = self.signer.sign(artifact)
                    _atomic_write(path.with_name(path.name + ".sig"), canonical_json(signature.model_dump()))
            except OSError as e:
                raise StorageError(f"Failed to write artifact {path}: {e}") from e
            written.append(path)

        logger.info(
            "Wrote %d artifacts for %s revision %d to %s",
            len(written),
            artifact_set.system_id,
            artifact_set.revision,
            target,
        )
        return written

    @staticmethod
    def _check_existing(path: Path, artifact: "Artifact") -> None:
        if path.exists() and path.read_bytes() != artifact.content:
            raise InconsistentState(
                f"Artifact {artifact.name} for revision {artifact.revision} already exists with different content"
            )
