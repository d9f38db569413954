"""Path-addressable blob storage used for models, checkpoints and job output."""

import os
import shutil
import tempfile
import uuid
from typing import List, Optional

from ps_orchestrator.utils.config import PSConfig
from ps_orchestrator.utils.logging import get_logger


def join_path(*parts: str) -> str:
    """Join storage keys with "/" regardless of the host OS."""
    return "/".join(p.strip("/") for p in parts if p and p.strip("/"))


ASIDE_MARKER = ".old-"

class LocalStorageBackend:
    """
    Local filesystem backend.

    Keys are "/"-separated paths relative to ``base_path``. Every write lands
    in a temporary file that is fsynced and then renamed over the target, and
    ``rename`` is ``os.replace``, so a reader never sees a half-written file.
    """

    def __init__(self, base_path: str = "/tmp/ps_orchestrator"):
        """
        Initialize local backend.

        Args:
            base_path: Base directory for storage
        """
        self.base_path = os.path.abspath(base_path)
        os.makedirs(self.base_path, exist_ok=True)
        self.logger = get_logger("local_backend")

    def _local(self, path: str) -> str:
        if path.startswith("file://"):
            path = path[len("file://"):]
        full_path = os.path.normpath(os.path.join(self.base_path, path.lstrip("/")))
        if full_path != self.base_path and not full_path.startswith(self.base_path + os.sep):
            raise ValueError(f"Path escapes storage root: {path}")
        return full_path

    def write(self, path: str, data: bytes):
        """Durably write ``data`` to ``path``."""
        local_path = self._local(path)
        directory = os.path.dirname(local_path)
        os.makedirs(directory, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, local_path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        self.logger.debug(f"Wrote {len(data)} bytes to {local_path}")

    def read(self, path: str) -> bytes:
        local_path = self._local(path)
        with open(local_path, "rb") as f:
            return f.read()

    def exists(self, path: str) -> bool:
        return os.path.exists(self._local(path))

    def list(self, prefix: str) -> List[str]:
        """All file keys under ``prefix``, sorted."""
        local_prefix = self._local(prefix)
        if os.path.isfile(local_prefix):
            return [join_path(prefix)]

        keys = []
        for root, _, files in os.walk(local_prefix):
            for fname in files:
                if fname.startswith(".tmp-"):
                    continue
                rel = os.path.relpath(os.path.join(root, fname), self.base_path)
                keys.append(rel.replace(os.sep, "/"))
        return sorted(keys)

    def list_children(self, prefix: str) -> List[str]:
        """Names of the immediate children of ``prefix``."""
        local_prefix = self._local(prefix)
        if not os.path.isdir(local_prefix):
            return []
        return sorted(n for n in os.listdir(local_prefix) if not n.startswith(".tmp-"))

    def delete(self, path: str):
        local_path = self._local(path)
        if os.path.isfile(local_path):
            os.remove(local_path)

    def delete_prefix(self, prefix: str):
        local_path = self._local(prefix)
        if os.path.isdir(local_path):
            shutil.rmtree(local_path)
        elif os.path.isfile(local_path):
            os.remove(local_path)

    def rename(self, src: str, dst: str, overwrite: bool = False, commit_last: Optional[str] = None):
        """
        Atomically move ``src`` (file or directory) to ``dst``.

        Args:
            src: Source key
            dst: Destination key
            overwrite: Replace an existing ``dst``; the old target is moved
                aside first and put back by ``restore_interrupted`` if the
                process dies before the new one is in place
            commit_last: Ignored; a local rename is already atomic
        """
        src_path, dst_path = self._local(src), self._local(dst)
        if not os.path.exists(src_path):
            raise FileNotFoundError(f"Rename source does not exist: {src}")
        self._restore_aside(dst_path)

        os.makedirs(os.path.dirname(dst_path), exist_ok=True)
        if os.path.exists(dst_path):
            if not overwrite:
                raise FileExistsError(f"Rename target exists: {dst}")
            # A directory can only be replaced once it is out of the way
            aside = f"{dst_path}{ASIDE_MARKER}{uuid.uuid4().hex[:8]}"
            os.replace(dst_path, aside)
            os.replace(src_path, dst_path)
            if os.path.isdir(aside):
                shutil.rmtree(aside)
            else:
                os.remove(aside)
        else:
            os.replace(src_path, dst_path)

        self._fsync_dir(os.path.dirname(dst_path))
        self.logger.debug(f"Renamed {src} -> {dst}")

    def restore_interrupted(self, path: str):
        """
        Undo an overwriting rename that stopped between its two moves.

        ``rename(overwrite=True)`` moves the old target aside before moving
        the new one in. If the process died in between, the old target is
        put back; any other leftover copies are removed.
        """
        self._restore_aside(self._local(path))

    def _restore_aside(self, local_path: str):
        directory, name = os.path.split(local_path)
        if not os.path.isdir(directory):
            return
        leftovers = sorted(
            os.path.join(directory, n) for n in os.listdir(directory)
            if n.startswith(name + ASIDE_MARKER)
        )
        if not leftovers:
            return

        if not os.path.exists(local_path):
            self.logger.warning(f"Restoring {local_path} from interrupted rename")
            os.replace(leftovers.pop(), local_path)
        for leftover in leftovers:
            if os.path.isdir(leftover):
                shutil.rmtree(leftover)
            else:
                os.remove(leftover)

    def _fsync_dir(self, directory: str):
        try:
            fd = os.open(directory, os.O_RDONLY)
        except OSError:
            return
        try:
            os.fsync(fd)
        except OSError as e:
            self.logger.debug(f"Directory fsync unsupported for {directory}: {e}")
        finally:
            os.close(fd)

    def close(self):
        pass


def create_backend(config: PSConfig):
    """Build the storage backend selected by ``config.storage_backend``."""
    if config.storage_backend == "s3":
        from ps_orchestrator.storage.s3_backend import S3Backend
        return S3Backend(config)
    return LocalStorageBackend(config.storage_base_path)
