"""SFTP transfer engine for sshbridge.

Handles single-path operations and bulk uploads over one SFTP handle:
- Idempotent ``mkdir`` that recovers from missing ancestors
- ``put_file`` that creates the remote parent once and retries
- ``put_files`` in sequential windows of concurrent uploads
- ``put_directory`` with serialised, de-duplicated directory creation and
  per-file outcome reporting
"""

from __future__ import annotations

import logging
import os
import stat as _stat
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed, wait
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, NamedTuple, Sequence, TypeVar

import paramiko

from sshbridge.config import DEFAULT_MAX_AT_ONCE, PutDirectoryOptions, TransferOptions
from sshbridge.errors import (
    InvalidArgumentError,
    LocalNotFoundError,
    PartialTransferError,
    RemoteMissingAncestorError,
    RemoteNotADirectoryError,
    is_missing_ancestor,
)
from sshbridge.utils.path_helpers import (
    human_readable_size,
    remote_dirname,
    scan_directory,
    to_remote_path,
    validate_remote_path,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Plan types
# ---------------------------------------------------------------------------


class LocalRemotePair(NamedTuple):
    """One file to upload: local source and remote destination."""

    local: str
    remote: str


@dataclass(frozen=True)
class PlannedFile:
    """A file in a directory transfer, with the remote directory it needs."""

    local_path: str
    remote_path: str
    remote_dir: str


@dataclass
class TransferPlan:
    """Files to upload in plan order, and their distinct parents in discovery order."""

    local_root: str
    remote_root: str
    files: list[PlannedFile] = field(default_factory=list)
    directories: list[str] = field(default_factory=list)


def build_transfer_plan(
    local_root: str,
    remote_root: str,
    options: PutDirectoryOptions,
) -> TransferPlan:
    """Scan *local_root* and map every accepted file under *remote_root*.

    Raises:
        OSError: If the local tree cannot be listed.
    """
    plan = TransferPlan(local_root=local_root, remote_root=remote_root)
    seen: set[str] = set()
    for local_path in scan_directory(local_root, options.recursive, options.validate):
        remote_path = to_remote_path(remote_root, os.path.relpath(local_path, local_root))
        remote_dir = remote_dirname(remote_path)
        plan.files.append(PlannedFile(local_path, remote_path, remote_dir))
        if remote_dir not in seen:
            seen.add(remote_dir)
            plan.directories.append(remote_dir)
    return plan


def windows(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    """Yield consecutive slices of *items* of at most *size* elements."""
    for start in range(0, len(items), size):
        yield items[start:start + size]


def to_pairs(files: Iterable[Any]) -> list[LocalRemotePair]:
    """Validate ``put_files`` input: tuples, mappings or objects with local/remote."""
    pairs: list[LocalRemotePair] = []
    for i, item in enumerate(files):
        if isinstance(item, tuple) and len(item) == 2:
            local, remote = item
        elif isinstance(item, dict):
            local, remote = item.get("local"), item.get("remote")
        else:
            local, remote = getattr(item, "local", None), getattr(item, "remote", None)
        if not local or not isinstance(local, str):
            raise InvalidArgumentError(f"files[{i}].local must be a string")
        if not remote or not isinstance(remote, str):
            raise InvalidArgumentError(f"files[{i}].remote must be a string")
        pairs.append(LocalRemotePair(local, remote))
    return pairs


def check_max_at_once(max_at_once: int) -> None:
    if isinstance(max_at_once, bool) or not isinstance(max_at_once, int) or max_at_once < 1:
        raise InvalidArgumentError(f"max_at_once must be a positive integer, got {max_at_once!r}")


def check_file_arguments(local_file: str, remote_file: str, local_must_exist: bool = True) -> None:
    """Validate a single-file transfer before any remote I/O.

    Raises:
        InvalidArgumentError: A path is empty or malformed.
        LocalNotFoundError: *local_file* is missing and *local_must_exist* is set.
    """
    if not local_file or not isinstance(local_file, str):
        raise InvalidArgumentError("local_file must be a string")
    if not isinstance(remote_file, str) or not validate_remote_path(remote_file):
        raise InvalidArgumentError("remote_file must be a string")
    if local_must_exist and not os.path.exists(local_file):
        raise LocalNotFoundError(f"local_file does not exist at {local_file}")


def check_directory_arguments(
    local_directory: str,
    remote_directory: str,
    options: PutDirectoryOptions | None,
    max_at_once: int,
) -> PutDirectoryOptions:
    """Validate a directory transfer before any remote I/O; returns the effective options."""
    options = options or PutDirectoryOptions()
    options.check()
    check_max_at_once(max_at_once)
    if not local_directory or not isinstance(local_directory, str):
        raise InvalidArgumentError("local_directory must be a string")
    if not isinstance(remote_directory, str) or not validate_remote_path(remote_directory):
        raise InvalidArgumentError("remote_directory must be a string")
    if not os.path.exists(local_directory):
        raise LocalNotFoundError(f"local_directory does not exist at {local_directory}")
    if not os.path.isdir(local_directory):
        raise InvalidArgumentError(f"local_directory is not a directory at {local_directory}")
    return options



# ---------------------------------------------------------------------------
# SFTPTransfer
# ---------------------------------------------------------------------------


class SFTPTransfer:
    """File operations bound to one SFTP handle.

    The handle is owned by the caller.  Directory creation is serialised
    through ``_dir_lock`` so concurrent uploads never race on the
    existence check of a shared parent.
    """

    def __init__(
        self,
        sftp: paramiko.SFTPClient,
        opts: TransferOptions | None = None,
    ) -> None:
        self._sftp = sftp
        self.opts = opts or TransferOptions()
        self.opts.validate()
        self._dir_lock = threading.RLock()

    # ------------------------------------------------------------------
    # mkdir
    # ------------------------------------------------------------------

    def _mkdir_once(self, path: str) -> None:
        """Create *path* unless it already is a directory.

        Raises:
            RemoteNotADirectoryError: *path* exists and is not a directory.
            RemoteMissingAncestorError: The parent of *path* does not exist.
        """
        try:
            attrs = self._sftp.stat(path)
        except OSError:
            attrs = None

        if attrs is not None:
            if isinstance(attrs.st_mode, int) and not _stat.S_ISDIR(attrs.st_mode):
                raise RemoteNotADirectoryError(
                    f"mkdir() failed, target already exists and is not a directory: {path}"
                )
            return

        try:
            self._sftp.mkdir(path)
        except OSError as exc:
            if is_missing_ancestor(exc):
                raise RemoteMissingAncestorError(f"No such file: parent of {path}") from exc
            raise
        logger.debug("Created remote directory %s", path)

    def mkdir(self, path: str) -> None:
        """Idempotently create the remote directory *path*.

        A missing parent is created first (recursively, so arbitrarily deep
        chains work) and creation of *path* is then retried exactly once.
        Any other failure propagates unchanged.
        """
        if not validate_remote_path(path):
            raise InvalidArgumentError(f"Invalid remote path: {path!r}")

        with self._dir_lock:
            try:
                self._mkdir_once(path)
            except RemoteMissingAncestorError:
                parent = remote_dirname(path)
                if parent == path:
                    raise
                logger.debug("Parent of %s missing — creating %s first", path, parent)
                self.mkdir(parent)
                self._mkdir_once(path)

    # ------------------------------------------------------------------
    # Single files
    # ------------------------------------------------------------------

    def _put(self, local_file: str, remote_file: str) -> None:
        self._sftp.put(
            local_file,
            remote_file,
            callback=self.opts.callback,
            confirm=self.opts.confirm,
        )

    def put_file(self, local_file: str, remote_file: str) -> None:
        """Upload one file, creating a missing remote parent once.

        Raises:
            LocalNotFoundError: *local_file* does not exist.
            OSError: The upload failed for another reason, or failed again
                after the parent directory was created.
        """
        check_file_arguments(local_file, remote_file)

        try:
            self._put(local_file, remote_file)
        except OSError as exc:
            if not is_missing_ancestor(exc):
                raise
            logger.warning("Remote parent of %s missing — creating it and retrying", remote_file)
            self.mkdir(remote_dirname(remote_file))
            self._put(local_file, remote_file)

        logger.debug(
            "Uploaded %s → %s (%s)",
            local_file,
            remote_file,
            human_readable_size(os.path.getsize(local_file)),
        )

    def get_file(self, local_file: str, remote_file: str) -> None:
        """Download one file.  No retry: a missing source or destination is a caller error."""
        check_file_arguments(local_file, remote_file, local_must_exist=False)
        self._sftp.get(remote_file, local_file, callback=self.opts.callback)
        logger.debug("Downloaded %s → %s", remote_file, local_file)

    # ------------------------------------------------------------------
    # Bulk
    # ------------------------------------------------------------------

    def put_files(
        self,
        files: Iterable[Any],
        max_at_once: int = DEFAULT_MAX_AT_ONCE,
    ) -> list[LocalRemotePair]:
        """Upload *files* in sequential windows of *max_at_once* concurrent uploads.

        Returns:
            The uploaded pairs, in input order.

        Raises:
            PartialTransferError: A file failed; ``transferred`` holds the
                pairs from the windows that completed before it.
        """
        check_max_at_once(max_at_once)
        pairs = to_pairs(files)
        transferred: list[LocalRemotePair] = []

        with ThreadPoolExecutor(max_workers=max_at_once, thread_name_prefix="put") as pool:
            for window in windows(pairs, max_at_once):
                futures = [pool.submit(self.put_file, p.local, p.remote) for p in window]
                wait(futures)
                for pair, future in zip(window, futures):
                    error = future.exception()
                    if error is not None:
                        logger.error("put_files: %s failed: %s", pair.local, error)
                        raise PartialTransferError(
                            f"Failed to upload {pair.local}: {error}",
                            transferred=list(transferred),
                        ) from error
                transferred.extend(window)

        return transferred

    def _transfer_planned(self, entry: PlannedFile, parent: Future) -> BaseException | None:
        """Wait for *entry*'s parent directory, then upload it.  Returns the failure, if any."""
        try:
            parent.result()
            self.put_file(entry.local_path, entry.remote_path)
        except Exception as exc:
            logger.warning("Upload failed for %s: %s", entry.local_path, exc)
            return exc
        return None

    def put_directory(
        self,
        local_directory: str,
        remote_directory: str,
        options: PutDirectoryOptions | None = None,
        max_at_once: int = DEFAULT_MAX_AT_ONCE,
    ) -> bool:
        """Mirror *local_directory* onto *remote_directory*.

        Each distinct remote parent is submitted once to a single-worker
        queue, in the order it is first needed; every file under it waits for
        that creation.  Files upload in sequential windows of *max_at_once*.
        Each outcome is reported through ``options.tick``.

        Returns:
            True iff every file was uploaded.

        Raises:
            LocalNotFoundError: *local_directory* does not exist.
            InvalidArgumentError: A root or option is malformed.
            OSError: The local tree cannot be listed.
        """
        options = check_directory_arguments(local_directory, remote_directory, options, max_at_once)

        plan = build_transfer_plan(local_directory, remote_directory, options)
        logger.info(
            "Uploading %d file(s) from %s → %s",
            len(plan.files),
            local_directory,
            remote_directory,
        )

        outcomes: list[bool] = []
        scheduled: dict[str, Future] = {}

        with ThreadPoolExecutor(max_workers=1, thread_name_prefix="mkdir") as dir_queue, \
                ThreadPoolExecutor(max_workers=max_at_once, thread_name_prefix="put") as pool:
            for window in windows(plan.files, max_at_once):
                futures: dict[Future, PlannedFile] = {}
                for entry in window:
                    if entry.remote_dir not in scheduled:
                        scheduled[entry.remote_dir] = dir_queue.submit(self.mkdir, entry.remote_dir)
                    future = pool.submit(self._transfer_planned, entry, scheduled[entry.remote_dir])
                    futures[future] = entry

                for future in as_completed(futures):
                    entry = futures[future]
                    error = future.result()
                    outcomes.append(error is None)
                    try:
                        options.tick(entry.local_path, entry.remote_path, error)
                    except Exception:
                        logger.exception("Exception in tick callback")

        failed = outcomes.count(False)
        if failed:
            logger.warning("Directory upload finished with %d failure(s)", failed)
        else:
            logger.info("Directory upload complete: %s → %s", local_directory, remote_directory)
        return failed == 0
