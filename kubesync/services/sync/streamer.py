"""
File Sync Streamer

Copies a local source tree (or just the changed paths of it) into a running
container by streaming a tar archive through remote `tar xf -`.

    make_tar (thread) --> BytePipe --> exec_in_pod stdin (thread) --> tar xf - -C <dest> --strip 1

Exec channels that cannot close stdin (protocols before v5) get the whole
archive spooled first and a `head -c <size>` in front of the remote tar.

Entries are named "<basename of local root>/<relative path>" so that
`--strip 1` lands them directly under the remote destination.
"""

import asyncio
import logging
import os
import posixpath
import shlex
import stat
import tarfile
import tempfile
from typing import BinaryIO, Iterable, List, Optional

from ...config import Settings, get_settings
from ...errors import KubesyncError, MalformedInputError, StreamFailureError
from ...utils.ignore_rules import get_abs_glob_exps, is_glob_exp_match, to_slash
from .pipe import BytePipe

logger = logging.getLogger(__name__)

# Archives up to this size stay in memory when they have to be measured first
SPOOL_MAX_MEMORY_BYTES = 8 * 1024 * 1024


def make_tar(
    local_root: str,
    fileobj: BinaryIO,
    changed_paths: Optional[Iterable[str]] = None,
    exclude_globs: Optional[Iterable[str]] = None
) -> None:
    """
    Write a tar stream of local_root (or only changed_paths) to fileobj.

    Args:
        local_root: Source directory
        fileobj: Writable stream; left open
        changed_paths: Paths (absolute or relative to local_root) to archive
            instead of the whole tree; paths that no longer exist are skipped
        exclude_globs: Absolute glob expressions; matching paths are skipped
            with everything below them
    """
    src = os.path.normpath(local_root)
    base = os.path.basename(src)
    globs = list(exclude_globs or [])

    with tarfile.open(fileobj=fileobj, mode="w|") as tar:
        if changed_paths:
            for path in changed_paths:
                if not os.path.isabs(path):
                    path = os.path.join(src, path)
                if not os.path.exists(path):
                    logger.debug(f"[SYNC] Skipping {path}, it no longer exists")
                    continue
                rel = os.path.relpath(path, src)
                _add_recursive(tar, os.path.normpath(path), posixpath.join(base, to_slash(rel)), globs)
        else:
            _add_recursive(tar, src, base, globs)


def _add_recursive(tar: tarfile.TarFile, path: str, arcname: str, globs: List[str]) -> None:
    if is_glob_exp_match(path, globs):
        return

    st = os.lstat(path)
    if stat.S_ISDIR(st.st_mode):
        entries = sorted(os.listdir(path))
        if not entries:
            tar.addfile(tar.gettarinfo(path, arcname))
        for entry in entries:
            _add_recursive(tar, os.path.join(path, entry), posixpath.join(arcname, entry), globs)
    elif stat.S_ISLNK(st.st_mode):
        # gettarinfo lstat()s, so the entry keeps the link target
        tar.addfile(tar.gettarinfo(path, arcname))
    elif stat.S_ISREG(st.st_mode):
        with open(path, "rb") as f:
            tar.addfile(tar.gettarinfo(path, arcname, fileobj=f), f)
    else:
        logger.debug(f"[SYNC] Skipping {path}, unsupported file type")


class FileSyncStreamer:
    """
    Pushes local files into a pod and propagates local deletions.

    The executor must provide a blocking
    exec_in_pod(pod_name, command, stdin=None, stdout=None, stderr=None, container_name=None)
    and supports_stdin_close(pod_name, container_name=None).
    """

    def __init__(self, executor, settings: Optional[Settings] = None):
        self.executor = executor
        self.settings = settings or get_settings()

    async def sync(
        self,
        local_root: str,
        pod_name: str,
        remote_dest: str,
        changed_paths: Optional[List[str]] = None,
        exclude_globs: Optional[List[str]] = None,
        container_name: Optional[str] = None
    ) -> None:
        """
        Stream local_root (or changed_paths) into remote_dest of a pod.

        Exclusion globs may be absolute or relative to local_root.

        The archive is piped into remote tar while it is being written. When
        the exec channel cannot signal end of input, the archive is written
        out first and the remote side reads exactly its size with head -c.

        Raises:
            StreamFailureError: Archiving, piping or the remote extraction failed
            RemoteCommandError: Remote tar exited non-zero
        """
        remote_dest = to_slash(remote_dest)
        globs = get_abs_glob_exps(local_root, exclude_globs or [])

        logger.info(f"[SYNC] Copying {local_root} to {pod_name}:{remote_dest}")
        if await asyncio.to_thread(self.executor.supports_stdin_close, pod_name, container_name):
            await self._copy_streamed(local_root, pod_name, remote_dest, changed_paths, globs, container_name)
        else:
            await self._copy_measured(local_root, pod_name, remote_dest, changed_paths, globs, container_name)
        logger.info(f"[SYNC] Copied {local_root} to {pod_name}:{remote_dest}")

    async def _copy_streamed(
        self,
        local_root: str,
        pod_name: str,
        remote_dest: str,
        changed_paths: Optional[List[str]],
        globs: List[str],
        container_name: Optional[str]
    ) -> None:
        command = ["tar", "xf", "-", "-C", remote_dest, "--strip", "1"]
        pipe = BytePipe(max_buffer=self.settings.sync_chunk_size * 4)

        def produce() -> None:
            try:
                make_tar(local_root, pipe.writer, changed_paths, globs)
            except KubesyncError as e:
                pipe.close_writer(e)
                raise
            except (OSError, tarfile.TarError) as e:
                error = StreamFailureError(f"unable to create tar of {local_root}: {e}", resource=local_root)
                pipe.close_writer(error)
                raise error from e
            pipe.close_writer()

        def consume() -> None:
            try:
                self.executor.exec_in_pod(
                    pod_name,
                    command,
                    stdin=pipe.reader,
                    container_name=container_name
                )
            except Exception as e:
                pipe.close_reader(e)
                raise
            # Remote tar stops at the end-of-archive blocks; discard trailing padding
            while pipe.reader.read(self.settings.sync_chunk_size):
                pass
            pipe.close_reader()

        results = await asyncio.gather(
            asyncio.to_thread(produce),
            asyncio.to_thread(consume),
            return_exceptions=True
        )

        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            # The side that failed first closed the pipe with its error
            origin = pipe.error or failures[0]
            if isinstance(origin, KubesyncError):
                raise origin
            raise StreamFailureError(
                f"unable to copy {local_root} to {pod_name}:{remote_dest}: {origin}",
                resource=pod_name
            ) from origin

    async def _copy_measured(
        self,
        local_root: str,
        pod_name: str,
        remote_dest: str,
        changed_paths: Optional[List[str]],
        globs: List[str],
        container_name: Optional[str]
    ) -> None:
        def copy() -> None:
            with tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_MEMORY_BYTES) as archive:
                try:
                    make_tar(local_root, archive, changed_paths, globs)
                except (OSError, tarfile.TarError) as e:
                    raise StreamFailureError(
                        f"unable to create tar of {local_root}: {e}", resource=local_root
                    ) from e
                size = archive.tell()
                archive.seek(0)

                command = [
                    "sh", "-c",
                    f"head -c {size} | tar xf - -C {shlex.quote(remote_dest)} --strip 1"
                ]
                logger.debug(f"[SYNC] Sending {size} byte archive to {pod_name}")
                try:
                    self.executor.exec_in_pod(pod_name, command, stdin=archive, container_name=container_name)
                except KubesyncError:
                    raise
                except Exception as e:
                    raise StreamFailureError(
                        f"unable to copy {local_root} to {pod_name}:{remote_dest}: {e}",
                        resource=pod_name
                    ) from e

        await asyncio.to_thread(copy)

    async def propagate_deletes(
        self,
        pod_name: str,
        deleted_rel_paths: List[str],
        remote_roots: List[str],
        container_name: Optional[str] = None
    ) -> None:
        """
        Remove locally deleted paths under every remote root with one command.

        Raises:
            MalformedInputError: If either list is empty
            RemoteCommandError: If rm exited non-zero
        """
        if not remote_roots or not deleted_rel_paths:
            raise MalformedInputError(
                f"failed to propagate deletions: remote roots {remote_roots} and deleted paths {deleted_rel_paths}",
                resource=pod_name
            )

        rm_paths = [
            posixpath.join(to_slash(root), to_slash(rel_path))
            for root in remote_roots
            for rel_path in deleted_rel_paths
        ]
        logger.debug(f"[SYNC] Paths marked for deletion: {rm_paths}")

        await asyncio.to_thread(
            self.executor.exec_in_pod,
            pod_name,
            ["rm", "-rf"] + rm_paths,
            container_name=container_name
        )
        logger.info(f"[SYNC] Propagated {len(deleted_rel_paths)} deletion(s) to {pod_name}")
