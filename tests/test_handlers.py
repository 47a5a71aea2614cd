"""
Tests for the archive format handlers.

Covers:
- Round trips for every native handler (content, modes, symlinks)
- ZIP symlink materialization
- Missing input tolerance and partial output cleanup
- Extraction errors: missing, corrupt and unsafe archives
- Shell handlers (skipped when the tools are not installed)
"""

import io
import logging
import os
import shutil
import stat
import tarfile
import zipfile
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from cachepack.compression import (
    GzipNativeHandler,
    GzipShellHandler,
    Lz4NativeHandler,
    TarGzipNativeHandler,
    TarGzipShellHandler,
    ZipNativeHandler,
    ZipShellHandler,
)
from cachepack.error_handling import (
    ArchiveCorruptError,
    ArchiveNotFoundError,
    ArchivePermissionError,
    CacheConfigurationError,
    CompressionError,
    ResourceExhaustedError,
    ResourceKind,
    ToolUnavailableError,
)


def tool_available(*commands: str) -> bool:
    return all(shutil.which(command) for command in commands)


TAR_HANDLERS = [TarGzipNativeHandler, GzipNativeHandler, Lz4NativeHandler]
NATIVE_HANDLERS = TAR_HANDLERS + [ZipNativeHandler]


def _archive(handler, tmp_path, paths, level=6):
    output = tmp_path / f"cache{handler.extension}"
    stats = handler.compress([str(p) for p in paths], output, level)
    return output, stats


class TestNativeRoundTrip:
    """Compress then extract with each native handler."""

    @pytest.mark.parametrize("handler_class", NATIVE_HANDLERS)
    def test_directory_round_trip(self, handler_class, sample_tree, restore_dir, tmp_path):
        handler = handler_class()
        output, stats = _archive(handler, tmp_path, [sample_tree])

        assert output.exists()
        assert stats.size_bytes == output.stat().st_size > 0

        handler.extract(output, restore_dir)
        assert (restore_dir / "project" / "a.txt").read_text() == "hello"
        assert (restore_dir / "project" / "sub" / "b.txt").read_text() == "world"

    @pytest.mark.parametrize("handler_class", TAR_HANDLERS)
    def test_tar_formats_preserve_symlinks(self, handler_class, sample_tree, restore_dir, tmp_path):
        handler = handler_class()
        output, _ = _archive(handler, tmp_path, [sample_tree])
        handler.extract(output, restore_dir)

        link = restore_dir / "project" / "link"
        assert link.is_symlink()
        assert os.readlink(link) == "a.txt"

    @pytest.mark.parametrize("handler_class", NATIVE_HANDLERS)
    def test_file_modes_preserved(self, handler_class, sample_tree, restore_dir, tmp_path):
        script = sample_tree / "run.sh"
        script.write_text("#!/bin/sh\n")
        script.chmod(0o755)

        handler = handler_class()
        output, _ = _archive(handler, tmp_path, [sample_tree])
        handler.extract(output, restore_dir)

        mode = stat.S_IMODE((restore_dir / "project" / "run.sh").stat().st_mode)
        assert mode == 0o755

    @pytest.mark.parametrize("handler_class", TAR_HANDLERS)
    def test_mtime_preserved(self, handler_class, sample_tree, restore_dir, tmp_path):
        os.utime(sample_tree / "a.txt", (1_600_000_000, 1_600_000_000))

        handler = handler_class()
        output, _ = _archive(handler, tmp_path, [sample_tree])
        handler.extract(output, restore_dir)

        assert int((restore_dir / "project" / "a.txt").stat().st_mtime) == 1_600_000_000

    @pytest.mark.parametrize("handler_class", NATIVE_HANDLERS)
    def test_single_file_archived_by_base_name(self, handler_class, sample_tree, restore_dir, tmp_path):
        handler = handler_class()
        output, _ = _archive(handler, tmp_path, [sample_tree / "sub" / "b.txt"])
        handler.extract(output, restore_dir)

        assert (restore_dir / "b.txt").read_text() == "world"
        assert not (restore_dir / "sub").exists()

    @pytest.mark.parametrize("handler_class", NATIVE_HANDLERS)
    def test_extract_returns_entry_count(self, handler_class, sample_tree, restore_dir, tmp_path):
        (sample_tree / "link").unlink()
        handler = handler_class()
        output, stats = _archive(handler, tmp_path, [sample_tree])

        # project/, project/a.txt, project/sub/, project/sub/b.txt
        assert stats.entries == 4
        assert handler.extract(output, restore_dir) == 4

    @pytest.mark.parametrize("handler_class", NATIVE_HANDLERS)
    def test_extract_overwrites_existing_files(self, handler_class, sample_tree, restore_dir, tmp_path):
        handler = handler_class()
        output, _ = _archive(handler, tmp_path, [sample_tree])

        (restore_dir / "project").mkdir()
        (restore_dir / "project" / "a.txt").write_text("stale")
        handler.extract(output, restore_dir)

        assert (restore_dir / "project" / "a.txt").read_text() == "hello"

    @pytest.mark.parametrize("handler_class", NATIVE_HANDLERS)
    def test_extract_creates_target_dir(self, handler_class, sample_tree, tmp_path):
        handler = handler_class()
        output, _ = _archive(handler, tmp_path, [sample_tree])

        target = tmp_path / "does" / "not" / "exist"
        handler.extract(output, target)
        assert (target / "project" / "a.txt").exists()

    @pytest.mark.parametrize("level", [0, 1, 9])
    @pytest.mark.parametrize("handler_class", NATIVE_HANDLERS)
    def test_all_levels_round_trip(self, handler_class, level, sample_tree, restore_dir, tmp_path):
        handler = handler_class()
        output, _ = _archive(handler, tmp_path, [sample_tree], level=level)
        handler.extract(output, restore_dir)
        assert (restore_dir / "project" / "a.txt").read_text() == "hello"

    def test_higher_level_is_not_larger(self, tmp_path):
        data_dir = tmp_path / "data"
        data_dir.mkdir()
        (data_dir / "repetitive.txt").write_text("cache me if you can\n" * 20000)

        handler = TarGzipNativeHandler()
        fast = handler.compress([str(data_dir)], tmp_path / "fast.tar.gz", 1)
        best = handler.compress([str(data_dir)], tmp_path / "best.tar.gz", 9)
        assert best.size_bytes <= fast.size_bytes


class TestZipSymlinks:
    """ZIP stores symlinks as the content they point to."""

    def test_symlink_materialized_as_regular_file(self, sample_tree, restore_dir, tmp_path, caplog):
        handler = ZipNativeHandler()
        with caplog.at_level(logging.WARNING):
            output, _ = _archive(handler, tmp_path, [sample_tree])
        handler.extract(output, restore_dir)

        link = restore_dir / "project" / "link"
        assert not link.is_symlink()
        assert link.read_text() == "hello"
        assert "Storing symlink as regular content" in caplog.text

    def test_dangling_symlink_skipped(self, sample_tree, restore_dir, tmp_path, caplog):
        os.symlink("missing.txt", sample_tree / "dangling")
        handler = ZipNativeHandler()

        with caplog.at_level(logging.WARNING):
            output, stats = _archive(handler, tmp_path, [sample_tree])
        handler.extract(output, restore_dir)

        assert not (restore_dir / "project" / "dangling").exists()
        assert any(path.endswith("dangling") for path in stats.skipped)
        assert "dangling symlink" in caplog.text

    def test_symlink_loop_does_not_recurse_forever(self, sample_tree, tmp_path):
        os.symlink("..", sample_tree / "sub" / "parent")
        handler = ZipNativeHandler()

        _, stats = _archive(handler, tmp_path, [sample_tree])
        assert any(path.endswith("parent") for path in stats.skipped)


class TestHardlinks:
    """Files sharing an inode keep their content through tar-based archives."""

    @pytest.mark.parametrize("handler_class", TAR_HANDLERS)
    def test_hardlinked_files_round_trip(self, handler_class, sample_tree, restore_dir, tmp_path):
        os.link(sample_tree / "a.txt", sample_tree / "sub" / "a-copy.txt")
        handler = handler_class()
        output, stats = _archive(handler, tmp_path, [sample_tree])

        handler.extract(output, restore_dir)

        assert (restore_dir / "project" / "a.txt").read_text() == "hello"
        assert (restore_dir / "project" / "sub" / "a-copy.txt").read_text() == "hello"

    def test_hardlink_stored_with_its_own_data(self, sample_tree, tmp_path):
        os.link(sample_tree / "a.txt", sample_tree / "z-copy.txt")
        output, _ = _archive(TarGzipNativeHandler(), tmp_path, [sample_tree])

        with tarfile.open(output, "r:gz") as tar:
            member = tar.getmember("project/z-copy.txt")
            assert member.isreg()
            assert tar.extractfile(member).read() == b"hello"

    def test_link_entries_from_other_tar_writers_extracted(self, tmp_path, restore_dir):
        archive = tmp_path / "linked.tar.gz"
        with tarfile.open(archive, "w:gz") as tar:
            data = b"shared"
            original = tarfile.TarInfo("pkg/original.bin")
            original.size = len(data)
            tar.addfile(original, io.BytesIO(data))
            link = tarfile.TarInfo("pkg/linked.bin")
            link.type = tarfile.LNKTYPE
            link.linkname = "pkg/original.bin"
            tar.addfile(link)

        assert TarGzipNativeHandler().extract(archive, restore_dir) == 2
        assert (restore_dir / "pkg" / "linked.bin").read_bytes() == b"shared"

    def test_link_entry_outside_target_skipped(self, tmp_path, restore_dir, caplog):
        secret = tmp_path / "secret.txt"
        secret.write_text("private")
        archive = tmp_path / "evil.tar.gz"
        with tarfile.open(archive, "w:gz") as tar:
            link = tarfile.TarInfo("stolen.txt")
            link.type = tarfile.LNKTYPE
            link.linkname = "../secret.txt"
            tar.addfile(link)

        with caplog.at_level(logging.WARNING):
            assert TarGzipNativeHandler().extract(archive, restore_dir) == 0

        assert not (restore_dir / "stolen.txt").exists()
        assert "Hardlink target missing or unsafe" in caplog.text

    def test_restoring_over_hardlink_leaves_other_name_intact(self, sample_tree, restore_dir, tmp_path):
        handler = TarGzipNativeHandler()
        output, _ = _archive(handler, tmp_path, [sample_tree])

        outside = tmp_path / "keep.txt"
        outside.write_text("keep")
        (restore_dir / "project").mkdir()
        os.link(outside, restore_dir / "project" / "a.txt")
        handler.extract(output, restore_dir)

        assert (restore_dir / "project" / "a.txt").read_text() == "hello"
        assert outside.read_text() == "keep"


class TestCompressInputs:
    """Input handling during compression."""

    @pytest.mark.parametrize("handler_class", NATIVE_HANDLERS)
    def test_missing_path_skipped_with_warning(self, handler_class, sample_tree, restore_dir, tmp_path, caplog):
        handler = handler_class()
        missing = tmp_path / "nope"

        with caplog.at_level(logging.WARNING):
            output, stats = _archive(handler, tmp_path, [sample_tree, missing])

        assert str(missing) in stats.skipped
        assert "Path not found" in caplog.text
        handler.extract(output, restore_dir)
        assert (restore_dir / "project" / "a.txt").exists()

    @pytest.mark.parametrize("handler_class", NATIVE_HANDLERS)
    def test_invalid_level_rejected(self, handler_class, sample_tree, tmp_path):
        with pytest.raises(CacheConfigurationError):
            _archive(handler_class(), tmp_path, [sample_tree], level=10)

    @pytest.mark.skipif(os.geteuid() == 0, reason="root can read any file")
    @pytest.mark.parametrize("handler_class", NATIVE_HANDLERS)
    def test_unreadable_file_skipped(self, handler_class, sample_tree, restore_dir, tmp_path, caplog):
        secret = sample_tree / "secret.txt"
        secret.write_text("classified")
        secret.chmod(0)
        try:
            handler = handler_class()
            with caplog.at_level(logging.WARNING):
                output, stats = _archive(handler, tmp_path, [sample_tree])
        finally:
            secret.chmod(0o644)

        assert str(secret) in stats.skipped
        handler.extract(output, restore_dir)
        assert (restore_dir / "project" / "a.txt").exists()
        assert not (restore_dir / "project" / "secret.txt").exists()

    @pytest.mark.parametrize("handler_class", NATIVE_HANDLERS)
    def test_partial_output_removed_on_failure(self, handler_class, sample_tree, tmp_path):
        handler = handler_class()
        output = tmp_path / f"partial{handler.extension}"

        with patch("cachepack.compression.native.os.listdir", side_effect=RuntimeError("boom")):
            with pytest.raises(RuntimeError):
                handler.compress([str(sample_tree)], output, 6)

        assert not output.exists()

    def test_disk_full_classified(self, sample_tree, tmp_path):
        handler = TarGzipNativeHandler()
        output = tmp_path / "full.tar.gz"
        error = OSError(28, "No space left on device")

        with patch("cachepack.compression.native.os.listdir", side_effect=error):
            with pytest.raises(ResourceExhaustedError) as exc_info:
                handler.compress([str(sample_tree)], output, 6)

        assert exc_info.value.kind is ResourceKind.DISK_FULL
        assert not output.exists()

    def test_unwritable_destination_classified(self, sample_tree, tmp_path):
        handler = TarGzipNativeHandler()
        with patch("tarfile.TarFile.addfile", side_effect=PermissionError(13, "Permission denied")):
            with pytest.raises(ArchivePermissionError):
                handler.compress([str(sample_tree)], tmp_path / "out.tar.gz", 6)


class TestExtractErrors:
    """Extraction failure modes."""

    @pytest.mark.parametrize("handler_class", NATIVE_HANDLERS)
    def test_missing_archive(self, handler_class, restore_dir, tmp_path):
        with pytest.raises(ArchiveNotFoundError):
            handler_class().extract(tmp_path / "missing.bin", restore_dir)

    @pytest.mark.parametrize("handler_class", NATIVE_HANDLERS)
    def test_garbage_archive_is_corrupt(self, handler_class, restore_dir, tmp_path):
        garbage = tmp_path / "garbage.bin"
        garbage.write_bytes(b"this is not an archive at all" * 10)

        with pytest.raises(ArchiveCorruptError):
            handler_class().extract(garbage, restore_dir)

    @pytest.mark.parametrize("handler_class", TAR_HANDLERS)
    def test_truncated_archive_is_corrupt(self, handler_class, tmp_path, restore_dir):
        data_dir = tmp_path / "data"
        data_dir.mkdir()
        (data_dir / "blob.bin").write_bytes(os.urandom(256 * 1024))

        handler = handler_class()
        output, _ = _archive(handler, tmp_path, [data_dir])
        output.write_bytes(output.read_bytes()[: output.stat().st_size // 2])

        with pytest.raises(ArchiveCorruptError):
            handler.extract(output, restore_dir)

    def test_tar_entries_escaping_target_skipped(self, tmp_path, restore_dir, caplog):
        archive = tmp_path / "evil.tar.gz"
        with tarfile.open(archive, "w:gz") as tar:
            for name in ("../escape.txt", "/abs.txt", "ok.txt"):
                data = b"payload"
                info = tarfile.TarInfo(name)
                info.size = len(data)
                tar.addfile(info, io.BytesIO(data))

        with caplog.at_level(logging.WARNING):
            count = TarGzipNativeHandler().extract(archive, restore_dir)

        assert count == 1
        assert (restore_dir / "ok.txt").exists()
        assert not (tmp_path / "escape.txt").exists()
        assert "Skipping unsafe entry" in caplog.text

    def test_zip_entries_escaping_target_skipped(self, tmp_path, restore_dir):
        archive = tmp_path / "evil.zip"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("../escape.txt", "payload")
            zf.writestr("ok.txt", "payload")

        assert ZipNativeHandler().extract(archive, restore_dir) == 1
        assert not (tmp_path / "escape.txt").exists()

    def test_symlink_cannot_redirect_later_entries(self, tmp_path, restore_dir):
        outside = tmp_path / "outside"
        outside.mkdir()
        archive = tmp_path / "evil.tar.gz"
        with tarfile.open(archive, "w:gz") as tar:
            link = tarfile.TarInfo("escape")
            link.type = tarfile.SYMTYPE
            link.linkname = str(outside)
            tar.addfile(link)
            data = b"payload"
            info = tarfile.TarInfo("escape/file.txt")
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))

        TarGzipNativeHandler().extract(archive, restore_dir)
        assert not (outside / "file.txt").exists()


class TestLz4Levels:
    def test_frame_level_mapping(self):
        assert Lz4NativeHandler.frame_level(0) == 0
        assert Lz4NativeHandler.frame_level(2) == 0
        assert Lz4NativeHandler.frame_level(3) == 6
        assert Lz4NativeHandler.frame_level(9) == 12


class TestHandlerMetadata:
    def test_priorities(self):
        assert TarGzipNativeHandler.priority == 200
        assert ZipNativeHandler.priority == 150
        assert GzipNativeHandler.priority == 100
        assert Lz4NativeHandler.priority == 50
        assert TarGzipShellHandler.priority == 100
        assert ZipShellHandler.priority == 50
        assert GzipShellHandler.priority == 25

    def test_names(self):
        assert TarGzipNativeHandler().name == "tar+gzip-native"
        assert TarGzipShellHandler().name == "tar+gzip"
        assert Lz4NativeHandler().name == "lz4-native"

    @pytest.mark.parametrize("handler_class", NATIVE_HANDLERS)
    def test_native_always_detects(self, handler_class):
        assert handler_class().detect() is True


# =============================================================================
# Shell handlers
# =============================================================================

def _fake_popen(results):
    """Popen stand-in: command name -> (returncode, stderr); file stdouts get dummy bytes."""

    def spawn(args, **kwargs):
        returncode, stderr = results[args[0]]
        process = MagicMock()
        process.returncode = returncode
        process.wait.return_value = returncode
        process.communicate.return_value = (b"", stderr)
        if hasattr(kwargs.get("stderr"), "write"):
            kwargs["stderr"].write(stderr)
        if hasattr(kwargs.get("stdout"), "write"):
            kwargs["stdout"].write(b"\x1f\x8b compressed")
        return process

    return spawn


SHELL_CASES = [
    pytest.param(
        TarGzipShellHandler,
        marks=pytest.mark.skipif(not tool_available("tar", "gzip"), reason="tar/gzip not installed"),
    ),
    pytest.param(
        GzipShellHandler,
        marks=pytest.mark.skipif(not tool_available("tar", "gzip"), reason="tar/gzip not installed"),
    ),
    pytest.param(
        ZipShellHandler,
        marks=pytest.mark.skipif(not tool_available("zip", "unzip"), reason="zip/unzip not installed"),
    ),
]


class TestShellHandlers:
    """Shell-exec handlers against the real tools."""

    @pytest.mark.parametrize("handler_class", SHELL_CASES)
    def test_round_trip(self, handler_class, sample_tree, restore_dir, tmp_path):
        handler = handler_class()
        output, _ = _archive(handler, tmp_path, [sample_tree])
        count = handler.extract(output, restore_dir)

        assert count > 0
        assert (restore_dir / "project" / "a.txt").read_text() == "hello"
        assert (restore_dir / "project" / "sub" / "b.txt").read_text() == "world"

    @pytest.mark.parametrize("handler_class", SHELL_CASES)
    def test_missing_paths_skipped(self, handler_class, sample_tree, restore_dir, tmp_path):
        handler = handler_class()
        output, _ = _archive(handler, tmp_path, [sample_tree, tmp_path / "nope"])
        handler.extract(output, restore_dir)
        assert (restore_dir / "project" / "a.txt").exists()

    @pytest.mark.parametrize("handler_class", SHELL_CASES)
    def test_no_existing_paths_fails(self, handler_class, tmp_path):
        with pytest.raises(CompressionError):
            _archive(handler_class(), tmp_path, [tmp_path / "nope"])

    @pytest.mark.parametrize("handler_class", SHELL_CASES)
    def test_corrupt_archive(self, handler_class, tmp_path, restore_dir):
        garbage = tmp_path / f"garbage{handler_class.extension}"
        garbage.write_bytes(b"definitely not compressed" * 10)
        with pytest.raises(ArchiveCorruptError):
            handler_class().extract(garbage, restore_dir)

    @pytest.mark.skipif(not tool_available("tar", "gzip"), reason="tar/gzip not installed")
    def test_shell_output_readable_by_native(self, sample_tree, restore_dir, tmp_path):
        output, _ = _archive(TarGzipShellHandler(), tmp_path, [sample_tree])
        TarGzipNativeHandler().extract(output, restore_dir)
        assert (restore_dir / "project" / "a.txt").read_text() == "hello"

    @pytest.mark.skipif(not tool_available("tar", "gzip"), reason="tar/gzip not installed")
    def test_gzip_intermediate_removed(self, sample_tree, restore_dir, tmp_path):
        handler = GzipShellHandler()
        output, _ = _archive(handler, tmp_path, [sample_tree])
        handler.extract(output, restore_dir)

        leftovers = [p for p in tmp_path.iterdir() if p.suffix == ".tar"]
        assert leftovers == []

    def test_missing_executable_raises_tool_unavailable(self, sample_tree, tmp_path):
        handler = TarGzipShellHandler()
        with patch("cachepack.compression.shell.subprocess.Popen", side_effect=FileNotFoundError("tar")):
            with pytest.raises(ToolUnavailableError) as exc_info:
                _archive(handler, tmp_path, [sample_tree])

        assert exc_info.value.command == "tar"
        assert not (tmp_path / "cache.tar.gz").exists()

    def test_no_space_in_stderr_classified(self):
        handler = GzipShellHandler()
        error = handler._command_error("compress", "gzip", 1, b"gzip: write error: No space left on device")
        assert isinstance(error, ResourceExhaustedError)
        assert error.kind is ResourceKind.DISK_FULL

    @pytest.mark.parametrize("handler_class", [TarGzipShellHandler, GzipShellHandler])
    def test_tar_skipping_unreadable_file_still_saves(self, handler_class, sample_tree, tmp_path, caplog):
        tar_stderr = (
            b"tar: project/secret.key: Cannot open: Permission denied\n"
            b"tar: Exiting with failure status due to previous errors\n"
        )
        spawn = _fake_popen({"tar": (2, tar_stderr), "gzip": (0, b"")})
        with patch("cachepack.compression.shell.subprocess.Popen", side_effect=spawn):
            with caplog.at_level(logging.WARNING):
                output, stats = _archive(handler_class(), tmp_path, [sample_tree])

        assert output.exists()
        assert stats.size_bytes > 0
        assert "secret.key: Cannot open: Permission denied" in caplog.text

    @pytest.mark.parametrize("handler_class", [TarGzipShellHandler, GzipShellHandler])
    def test_tar_file_changed_exit_still_saves(self, handler_class, sample_tree, tmp_path):
        spawn = _fake_popen({"tar": (1, b"tar: project/a.txt: file changed as we read it\n"), "gzip": (0, b"")})
        with patch("cachepack.compression.shell.subprocess.Popen", side_effect=spawn):
            output, _ = _archive(handler_class(), tmp_path, [sample_tree])

        assert output.exists()

    @pytest.mark.parametrize("handler_class", [TarGzipShellHandler, GzipShellHandler])
    def test_tar_fatal_exit_still_fails(self, handler_class, sample_tree, tmp_path):
        tar_stderr = b"tar: /ro/cache.tar: Cannot open: Read-only file system\n"
        spawn = _fake_popen({"tar": (2, tar_stderr), "gzip": (0, b"")})
        with patch("cachepack.compression.shell.subprocess.Popen", side_effect=spawn):
            with pytest.raises(CompressionError, match="exit code 2"):
                _archive(handler_class(), tmp_path, [sample_tree])

        assert not (tmp_path / "cache.tar.gz").exists()

    def test_permission_denied_during_extract_classified(self):
        handler = TarGzipShellHandler()
        error = handler._command_error("extract", "tar", 2, b"tar: x: Cannot open: Permission denied")
        assert isinstance(error, ArchivePermissionError)

    def test_detect_uses_detection_context(self):
        from cachepack.compression import DetectionContext, DetectionResult, CompressionFormat

        detection = DetectionContext(
            [
                DetectionResult(CompressionFormat.TAR_GZIP, False, "tar"),
                DetectionResult(CompressionFormat.GZIP, True, "gzip"),
            ]
        )
        with patch("cachepack.compression.shell.detect_tool") as probe:
            assert TarGzipShellHandler(detection).detect() is False
            probe.assert_not_called()
