import shutil
import tempfile
from pathlib import Path
from types import TracebackType

from loguru import logger


class JobWorkspace:
    """Per-job scratch directory, removed when the `async with` block exits for any reason."""

    def __init__(self, job_id: str, *, root: Path | None = None) -> None:
        self.job_id = job_id
        self.root = root
        self.path: Path | None = None

    async def __aenter__(self) -> "JobWorkspace":
        if self.root is not None:
            self.root.mkdir(parents=True, exist_ok=True)
        self.path = Path(tempfile.mkdtemp(prefix=f"job-{self.job_id}-", dir=self.root))
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()

    def file(self, name: str) -> Path:
        if self.path is None:
            raise RuntimeError("Workspace is not acquired")
        return self.path / name

    def release(self) -> None:
        """Remove the directory. Safe to call more than once."""
        if self.path is None:
            return
        path, self.path = self.path, None
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Failed to remove workspace {path}: {e}")
