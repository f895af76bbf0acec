"""
Unit tests for the file sync streamer.

Tests:
- Archive layout and exclusion globs
- Empty directories and symlinks
- Changed path subsets
- Remote and producer failures end both sides
- Delete propagation
"""

import io
import os
import tarfile
from unittest.mock import patch

import pytest

from fakes import FakeSession
from kubesync.errors import MalformedInputError, RemoteCommandError, StreamFailureError
from kubesync.services.sync.streamer import FileSyncStreamer, make_tar


def tar_members(data):
    with tarfile.open(fileobj=io.BytesIO(data), mode="r") as tar:
        return {m.name: m for m in tar.getmembers()}


def build_tar(root, **kwargs):
    buf = io.BytesIO()
    make_tar(str(root), buf, **kwargs)
    return tar_members(buf.getvalue())


@pytest.fixture
def streamer(session, settings):
    return FileSyncStreamer(session, settings)


@pytest.mark.unit
@pytest.mark.sync
class TestMakeTar:
    """Test archive creation."""

    def test_whole_tree(self, source_tree):
        members = build_tar(source_tree)

        assert set(members) == {"app/README.md", "app/build/out.bin", "app/src/main.go"}

    def test_exclusion_glob_skips_subtree(self, source_tree):
        members = build_tar(source_tree, exclude_globs=[os.path.join(str(source_tree), "build")])

        assert set(members) == {"app/README.md", "app/src/main.go"}

    def test_empty_directory_kept(self, source_tree):
        (source_tree / "empty").mkdir()

        members = build_tar(source_tree)

        assert members["app/empty"].isdir()

    def test_symlink_kept_as_link(self, source_tree):
        os.symlink("src/main.go", source_tree / "link")

        members = build_tar(source_tree)

        assert members["app/link"].issym()
        assert members["app/link"].linkname == "src/main.go"

    def test_changed_paths_only(self, source_tree):
        members = build_tar(
            source_tree,
            changed_paths=[str(source_tree / "src" / "main.go"), "README.md", "gone.txt"]
        )

        assert set(members) == {"app/src/main.go", "app/README.md"}

    def test_file_contents(self, source_tree):
        buf = io.BytesIO()
        make_tar(str(source_tree), buf)

        with tarfile.open(fileobj=io.BytesIO(buf.getvalue()), mode="r") as tar:
            assert tar.extractfile("app/build/out.bin").read() == b"\x00\x01\x02"


@pytest.mark.unit
@pytest.mark.sync
class TestSync:
    """Test streaming into a pod."""

    @pytest.mark.asyncio
    async def test_sync_runs_remote_tar(self, session, streamer, source_tree):
        await streamer.sync(
            str(source_tree),
            "pod-1",
            "/opt/app-root/src",
            exclude_globs=["build/*"],
            container_name="web"
        )

        call, = session.exec_calls
        assert call.command == ["tar", "xf", "-", "-C", "/opt/app-root/src", "--strip", "1"]
        assert call.container_name == "web"
        assert set(tar_members(call.stdin)) == {"app/README.md", "app/src/main.go"}

    @pytest.mark.asyncio
    async def test_large_file_streams_through_small_buffer(self, session, streamer, source_tree):
        payload = os.urandom(64 * 1024)
        (source_tree / "big.bin").write_bytes(payload)

        await streamer.sync(str(source_tree), "pod-1", "/dest")

        with tarfile.open(fileobj=io.BytesIO(session.exec_calls[0].stdin), mode="r") as tar:
            assert tar.extractfile("app/big.bin").read() == payload

    @pytest.mark.asyncio
    async def test_remote_failure_ends_producer(self, settings, source_tree):
        session = FakeSession()
        session.exec_error = RemoteCommandError("tar exited with code 2", exit_code=2)
        (source_tree / "big.bin").write_bytes(os.urandom(64 * 1024))

        with pytest.raises(RemoteCommandError):
            await FileSyncStreamer(session, settings).sync(str(source_tree), "pod-1", "/dest")

    @pytest.mark.asyncio
    async def test_unexpected_remote_failure_is_wrapped(self, settings, source_tree):
        session = FakeSession()
        session.exec_error = RuntimeError("websocket closed")

        with pytest.raises(StreamFailureError) as exc_info:
            await FileSyncStreamer(session, settings).sync(str(source_tree), "pod-1", "/dest")

        assert "websocket closed" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_producer_failure_surfaces(self, session, streamer, source_tree):
        with patch("kubesync.services.sync.streamer.make_tar", side_effect=OSError("permission denied")):
            with pytest.raises(StreamFailureError) as exc_info:
                await streamer.sync(str(source_tree), "pod-1", "/dest")

        assert "permission denied" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_checks_input_close_on_target_pod(self, session, streamer, source_tree):
        await streamer.sync(str(source_tree), "pod-1", "/dest", container_name="web")

        assert session.stdin_close_checks == [("pod-1", "web")]


@pytest.mark.unit
@pytest.mark.sync
class TestSyncWithoutInputClose:
    """Test copying when the exec channel cannot signal end of input."""

    @pytest.fixture
    def session(self):
        session = FakeSession()
        session.stdin_close_supported = False
        return session

    @pytest.mark.asyncio
    async def test_remote_reads_exact_archive_size(self, session, streamer, source_tree):
        await streamer.sync(str(source_tree), "pod-1", "/opt/app root/src", container_name="web")

        call, = session.exec_calls
        assert call.command[:2] == ["sh", "-c"]
        assert call.command[2] == f"head -c {len(call.stdin)} | tar xf - -C '/opt/app root/src' --strip 1"
        assert call.container_name == "web"
        assert set(tar_members(call.stdin)) == {"app/README.md", "app/build/out.bin", "app/src/main.go"}

    @pytest.mark.asyncio
    async def test_large_archive_spills_to_disk(self, session, streamer, source_tree):
        payload = os.urandom(64 * 1024)
        (source_tree / "big.bin").write_bytes(payload)

        with patch("kubesync.services.sync.streamer.SPOOL_MAX_MEMORY_BYTES", 1024):
            await streamer.sync(str(source_tree), "pod-1", "/dest")

        with tarfile.open(fileobj=io.BytesIO(session.exec_calls[0].stdin), mode="r") as tar:
            assert tar.extractfile("app/big.bin").read() == payload

    @pytest.mark.asyncio
    async def test_remote_failure_propagates(self, session, streamer, source_tree):
        session.exec_error = RemoteCommandError("tar exited with code 2", exit_code=2)

        with pytest.raises(RemoteCommandError):
            await streamer.sync(str(source_tree), "pod-1", "/dest")

    @pytest.mark.asyncio
    async def test_unexpected_remote_failure_is_wrapped(self, session, streamer, source_tree):
        session.exec_error = RuntimeError("websocket closed")

        with pytest.raises(StreamFailureError) as exc_info:
            await streamer.sync(str(source_tree), "pod-1", "/dest")

        assert "websocket closed" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_archive_failure_skips_remote(self, session, streamer, source_tree):
        with patch("kubesync.services.sync.streamer.make_tar", side_effect=OSError("permission denied")):
            with pytest.raises(StreamFailureError) as exc_info:
                await streamer.sync(str(source_tree), "pod-1", "/dest")

        assert "permission denied" in str(exc_info.value)
        assert session.exec_calls == []


@pytest.mark.unit
@pytest.mark.sync
class TestPropagateDeletes:
    """Test remote deletion of locally deleted paths."""

    @pytest.mark.asyncio
    async def test_single_rm_for_all_roots(self, session, streamer):
        await streamer.propagate_deletes("pod-1", ["a.txt", "dir/b"], ["/src", "/work"], container_name="web")

        call, = session.exec_calls
        assert call.command == ["rm", "-rf", "/src/a.txt", "/src/dir/b", "/work/a.txt", "/work/dir/b"]
        assert call.container_name == "web"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("paths, roots", [([], ["/src"]), (["a"], [])])
    async def test_empty_lists_rejected(self, session, streamer, paths, roots):
        with pytest.raises(MalformedInputError):
            await streamer.propagate_deletes("pod-1", paths, roots)

        assert session.exec_calls == []

    @pytest.mark.asyncio
    async def test_rm_failure(self, session, streamer):
        session.exec_error = RemoteCommandError("rm exited with code 1", exit_code=1)

        with pytest.raises(RemoteCommandError):
            await streamer.propagate_deletes("pod-1", ["a"], ["/src"])
