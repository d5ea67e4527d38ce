"""
Task processing pipeline.

A file goes through the configured tasks in order. Every task whose extension
set contains the file's extension is attempted in a fresh workspace until one
of them leaves exactly one file in its output directory:

    processing-xxxx/
        src/file-xxxx.heic   copy of the original bytes
        dst/                 the command must write exactly one file here

Failed attempts are discarded together with their workspace before the next
task runs, so stale output never leaks into a fallback attempt. On success the
caller owns the returned ProcessedFile and must close it.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, List, Optional, Sequence

from .errors import InvalidUploadError, NoMatchingTaskError, PipelineError, TaskAttemptError
from .gate import ConcurrencyGate
from .models import TaskDefinition
from .utils import PrefixedLogger, is_safe_extension, normalize_extension, split_extension, trim_suffix_case_insensitive

logger = logging.getLogger(__name__)

COPY_CHUNK_SIZE = 8 * 1024 * 1024


def should_replace(original_size: int, processed_size: int) -> bool:
    """A processed file only replaces the original when it is strictly smaller."""
    return processed_size < original_size


def processed_filename(original_filename: str, original_extension: str, new_extension: str) -> str:
    """
    Swap the extension of an uploaded filename.

    Example:
        >>> processed_filename("IMG_0001.HEIC", "heic", "jxl")
        "IMG_0001.jxl"
    """
    stem = trim_suffix_case_insensitive(original_filename, f".{original_extension}") if original_extension else original_filename
    return f"{stem}.{new_extension}" if new_extension else stem


@dataclass
class UploadDescriptor:
    """
    The original file handed to the pipeline.

    Attributes:
        filename: Client-side filename (only used for naming the result)
        extension: Normalized extension, lowercase without dot
        size: Size of the original bytes
        path: Where the original bytes live on disk
        owned: Whether ``path`` is a temp copy to delete on close
    """

    filename: str
    extension: str
    size: int
    path: Path
    owned: bool = False

    @classmethod
    def from_path(cls, path: Path) -> "UploadDescriptor":
        _, extension = split_extension(path.name)
        return cls(filename=path.name, extension=extension, size=path.stat().st_size, path=path)

    @classmethod
    def from_stream(cls, filename: str, stream: BinaryIO, temp_dir: Optional[Path] = None) -> "UploadDescriptor":
        """
        Spool an upload stream into a temp file owned by the descriptor.

        Raises:
            InvalidUploadError: If the extension contains anything but letters and digits
        """
        _, extension = split_extension(filename)
        if extension and not is_safe_extension(extension):
            raise InvalidUploadError(f"invalid file extension: {extension}")

        suffix = f".{extension}" if extension else ""
        handle = tempfile.NamedTemporaryFile(prefix="upload-", suffix=suffix, dir=temp_dir, delete=False)
        path = Path(handle.name)
        try:
            with handle:
                shutil.copyfileobj(stream, handle, COPY_CHUNK_SIZE)
                size = handle.tell()
        except BaseException:
            path.unlink(missing_ok=True)
            raise
        return cls(filename=filename, extension=extension, size=size, path=path, owned=True)

    def open(self) -> BinaryIO:
        return self.path.open("rb")

    def close(self) -> None:
        if self.owned:
            self.path.unlink(missing_ok=True)
            self.owned = False

    def __enter__(self) -> "UploadDescriptor":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


@dataclass
class WorkItem:
    """Isolated workspace of one task attempt."""

    root: Path
    src_dir: Path = field(init=False)
    dst_dir: Path = field(init=False)

    def __post_init__(self) -> None:
        self.src_dir = self.root / "src"
        self.dst_dir = self.root / "dst"

    @classmethod
    def create(cls, temp_dir: Optional[Path] = None) -> "WorkItem":
        item = cls(Path(tempfile.mkdtemp(prefix="processing-", dir=temp_dir)))
        item.src_dir.mkdir()
        item.dst_dir.mkdir()
        return item

    def stage(self, upload: UploadDescriptor) -> Path:
        """Copy the original bytes into the source directory under a generated name."""
        suffix = f".{upload.extension}" if upload.extension else ""
        with upload.open() as source, tempfile.NamedTemporaryFile(prefix="file-", suffix=suffix, dir=self.src_dir, delete=False) as target:
            shutil.copyfileobj(source, target, COPY_CHUNK_SIZE)
        return Path(target.name)

    def single_output(self) -> Path:
        entries = list(self.dst_dir.iterdir())
        if len(entries) != 1:
            raise ValueError(f"unexpected number of files in output directory: {len(entries)}")
        if not entries[0].is_file():
            raise ValueError(f"output is not a regular file: {entries[0].name}")
        return entries[0]

    def discard(self) -> None:
        shutil.rmtree(self.root, ignore_errors=True)


@dataclass
class ProcessedFile:
    """Successful pipeline output. Closing it deletes its workspace."""

    path: Path
    extension: str
    size: int
    task_name: str
    workspace: WorkItem

    def open(self) -> BinaryIO:
        return self.path.open("rb")

    def close(self) -> None:
        self.workspace.discard()

    def __enter__(self) -> "ProcessedFile":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class TaskProcessor:
    """
    Runs the ordered fallback chain of tasks against one file at a time.

    A single processor is shared by every ingestion path; it holds no per-file
    state, so concurrent ``process`` calls only contend on the gate.
    """

    def __init__(
        self,
        tasks: Sequence[TaskDefinition],
        gate: ConcurrencyGate,
        working_dir: Path,
        temp_dir: Optional[Path] = None,
    ) -> None:
        self.tasks = list(tasks)
        self.gate = gate
        self.working_dir = working_dir
        self.temp_dir = temp_dir

    def matching_tasks(self, extension: str) -> List[TaskDefinition]:
        return [task for task in self.tasks if task.matches(extension)]

    def handles(self, extension: str) -> bool:
        return bool(self.matching_tasks(extension))

    def process(self, upload: UploadDescriptor, log: Optional[logging.LoggerAdapter] = None) -> ProcessedFile:
        """
        Run the fallback chain for an upload.

        Args:
            upload: The original file
            log: Logger carrying the caller's job or file context

        Returns:
            The first successful attempt's output

        Raises:
            NoMatchingTaskError: If no task handles the extension
            PipelineError: If every matching task failed
        """
        log = log or PrefixedLogger(logger)
        extension = normalize_extension(upload.extension)
        if not is_safe_extension(extension):
            raise InvalidUploadError(f"invalid file extension: {extension or '(none)'}")

        candidates = self.matching_tasks(extension)
        if not candidates:
            raise NoMatchingTaskError(f"no task found for file extension {extension}")

        errors: List[Exception] = []
        for task in candidates:
            try:
                result = self._attempt(task, upload, log)
            except TaskAttemptError as exc:
                log.warning(str(exc))
                errors.append(exc)
                continue
            if errors:
                log.info(f"task {task.name} succeeded after {len(errors)} failed attempt(s)")
            return result

        raise PipelineError.from_attempts(errors)

    def _attempt(self, task: TaskDefinition, upload: UploadDescriptor, log: logging.LoggerAdapter) -> ProcessedFile:
        with self.gate.permit():
            try:
                work = WorkItem.create(self.temp_dir)
            except OSError as exc:
                raise TaskAttemptError(task.name, f"unable to create workspace: {exc}") from exc

            try:
                output = self._run(task, upload, work, log)
                shutil.rmtree(work.src_dir, ignore_errors=True)
                _, extension = split_extension(output.name)
                return ProcessedFile(
                    path=output,
                    extension=extension,
                    size=output.stat().st_size,
                    task_name=task.name,
                    workspace=work,
                )
            except TaskAttemptError:
                work.discard()
                raise
            except OSError as exc:
                work.discard()
                raise TaskAttemptError(task.name, str(exc)) from exc
            except BaseException:
                work.discard()
                raise

    def _run(self, task: TaskDefinition, upload: UploadDescriptor, work: WorkItem, log: logging.LoggerAdapter) -> Path:
        source = work.stage(upload)

        if task.passthrough:
            log.info(f"task {task.name}: empty command, keeping file unchanged")
            shutil.copy2(source, work.dst_dir / source.name)
        else:
            try:
                command = task.render(
                    src_folder=str(work.src_dir),
                    dst_folder=str(work.dst_dir),
                    name=source.stem,
                    extension=upload.extension,
                )
            except (KeyError, IndexError, ValueError) as exc:
                raise TaskAttemptError(task.name, f"unable to generate command to be run: {exc!r}") from exc

            log.info(f"task {task.name}: running: {command}")
            completed = subprocess.run(
                ["sh", "-c", command],
                cwd=self.working_dir,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                check=False,
            )
            output_text = completed.stdout.decode("utf-8", errors="replace")
            if completed.returncode != 0:
                raise TaskAttemptError(
                    task.name,
                    f"exit status {completed.returncode} while running command:\n{command}\nOutput:\n{output_text}",
                )
            if output_text.strip():
                log.debug(f"task {task.name} output:\n{output_text}")

        try:
            return work.single_output()
        except ValueError as exc:
            raise TaskAttemptError(task.name, str(exc)) from exc
