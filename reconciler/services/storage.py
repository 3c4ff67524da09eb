"""
Receipt file storage.

Receipts are opaque blobs addressed by a relative storage path. The default
store writes them under RECEIPTS_DIR on local disk.
"""
import logging
from pathlib import Path

from .outcome import StorageError

logger = logging.getLogger(__name__)


class LocalReceiptStorage:
    """Stores receipt blobs as files below a root directory"""

    def __init__(self, root: Path):
        self.root = Path(root)

    def _resolve(self, storage_path: str) -> Path:
        target = (self.root / storage_path).resolve()
        if self.root.resolve() not in target.parents:
            raise StorageError(f"Invalid storage path: {storage_path}")
        return target

    def save(self, storage_path: str, content: bytes) -> None:
        target = self._resolve(storage_path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, "wb") as f:
                f.write(content)
        except OSError as exc:
            raise StorageError(f"Failed to store receipt: {exc}") from exc
        logger.debug("Stored receipt %s (%d bytes)", storage_path, len(content))

    def delete(self, storage_path: str) -> None:
        target = self._resolve(storage_path)
        try:
            target.unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError(f"Failed to delete receipt: {exc}") from exc

    def exists(self, storage_path: str) -> bool:
        return self._resolve(storage_path).exists()
