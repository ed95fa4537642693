"""In-memory aggregate of files produced during a generation run.

The aggregate is owned by the run coordinator; a whole batch is merged at
once when its task completes. Readers always receive copies.
"""

import re
from collections.abc import Iterable
from dataclasses import dataclass, field

import structlog

from errors import InvalidFilePathError
from models.schemas import GeneratedFile

logger = structlog.get_logger(__name__)

_DRIVE_PATH = re.compile(r"^[A-Za-z]:")


def normalize_path(raw_path: str) -> str:
    """Normalize a project-relative path.

    Backslashes become forward slashes, and leading ``./`` and ``/`` segments
    are stripped.

    Examples:
        >>> normalize_path("./backend/src/server.ts")
        'backend/src/server.ts'
        >>> normalize_path("frontend\\\\src\\\\App.tsx")
        'frontend/src/App.tsx'

    Raises:
        InvalidFilePathError: If the path is empty, contains ``..`` segments,
            null bytes, or is an absolute drive path.
    """
    if not isinstance(raw_path, str) or not raw_path.strip():
        raise InvalidFilePathError(str(raw_path), "path cannot be empty")

    path = raw_path.strip().replace("\\", "/")

    if "\x00" in path:
        raise InvalidFilePathError(raw_path, "null bytes are not allowed")
    if _DRIVE_PATH.match(path):
        raise InvalidFilePathError(raw_path, "absolute drive paths are not allowed")

    while path.startswith("./") or path.startswith("/"):
        path = path[2:] if path.startswith("./") else path[1:]

    segments = path.split("/")
    if ".." in segments:
        raise InvalidFilePathError(raw_path, "path traversal is not allowed")

    path = "/".join(segment for segment in segments if segment not in ("", "."))
    if not path:
        raise InvalidFilePathError(raw_path, "path cannot be empty")
    return path


@dataclass(frozen=True)
class FileCollision:
    """A path written by two different tasks with different content."""

    path: str
    previous_task_id: str
    task_id: str


@dataclass(frozen=True)
class MergeResult:
    """Outcome of merging one task's batch.

    Attributes:
        written: Files stored by this merge, in batch order
        collisions: Cross-task overwrites with differing content
        replayed: True when the batch was already merged for the task
    """

    written: tuple[GeneratedFile, ...] = ()
    collisions: tuple[FileCollision, ...] = ()
    replayed: bool = False


@dataclass
class FileAggregate:
    """Path-keyed collection of generated files for one run."""

    _files: dict[str, GeneratedFile] = field(default_factory=dict)
    _merged_tasks: set[str] = field(default_factory=set)

    def merge(self, task_id: str, files: Iterable[GeneratedFile]) -> MergeResult:
        """Merge a task's batch into the aggregate.

        The whole batch is validated before any file is stored, so an
        invalid path leaves the aggregate untouched. Merging the same task
        twice is a no-op.

        Args:
            task_id: The task that produced the batch
            files: Files returned by the task's agent

        Returns:
            MergeResult describing what was written

        Raises:
            InvalidFilePathError: If any path in the batch is invalid.
        """
        if task_id in self._merged_tasks:
            logger.debug("aggregate_merge_replayed", task_id=task_id)
            return MergeResult(replayed=True)

        # Later duplicates inside a batch override earlier ones.
        batch: dict[str, GeneratedFile] = {}
        for generated in files:
            path = normalize_path(generated.path)
            batch.pop(path, None)
            batch[path] = GeneratedFile(path=path, content=generated.content, task_id=task_id)

        collisions: list[FileCollision] = []
        for path, generated in batch.items():
            existing = self._files.get(path)
            if (
                existing is not None
                and existing.task_id != task_id
                and existing.content != generated.content
            ):
                collisions.append(
                    FileCollision(
                        path=path,
                        previous_task_id=existing.task_id,
                        task_id=task_id,
                    )
                )
            self._files[path] = generated

        self._merged_tasks.add(task_id)
        logger.debug(
            "aggregate_batch_merged",
            task_id=task_id,
            file_count=len(batch),
            collision_count=len(collisions),
        )
        return MergeResult(written=tuple(batch.values()), collisions=tuple(collisions))

    def has_merged(self, task_id: str) -> bool:
        return task_id in self._merged_tasks

    def get(self, path: str) -> GeneratedFile | None:
        try:
            return self._files.get(normalize_path(path))
        except InvalidFilePathError:
            return None

    def paths(self) -> list[str]:
        return sorted(self._files)

    def files(self) -> list[GeneratedFile]:
        return [self._files[path] for path in sorted(self._files)]

    def files_owned_by(self, task_ids: Iterable[str]) -> list[GeneratedFile]:
        """Files whose current owner is one of ``task_ids``."""
        owners = set(task_ids)
        return [f for f in self.files() if f.task_id in owners]

    def count_owned_by(self, task_id: str) -> int:
        return sum(1 for f in self._files.values() if f.task_id == task_id)

    def total_size(self) -> int:
        return sum(f.size for f in self._files.values())

    def __len__(self) -> int:
        return len(self._files)

    def __contains__(self, path: object) -> bool:
        return isinstance(path, str) and self.get(path) is not None
