"""Tests for cross-process lock files."""

import threading
import time
from unittest.mock import patch

import pytest

from cloudpack.utils import file_lock
from cloudpack.utils.file_lock import FileLockError, FileLockTimeout, locked_path


class TestLockedPath:
    """Test the locked_path context manager."""

    def test_creates_lock_file(self, tmp_path):
        lock_file = tmp_path / "nested" / "index.lock"

        with locked_path(lock_file):
            assert lock_file.exists()

    def test_serializes_threads(self, tmp_path):
        lock_file = tmp_path / "index.lock"
        events = []

        def worker(name):
            with locked_path(lock_file, timeout=5.0):
                events.append(f"{name}-in")
                time.sleep(0.05)
                events.append(f"{name}-out")

        threads = [threading.Thread(target=worker, args=(n,)) for n in ("a", "b")]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        # Each holder leaves before the next one enters
        assert events[0][0] == events[1][0]
        assert events[2][0] == events[3][0]

    def test_timeout(self, tmp_path):
        lock_file = tmp_path / "index.lock"

        with patch.object(file_lock, "_acquire", side_effect=BlockingIOError("busy")):
            with pytest.raises(FileLockTimeout) as exc_info:
                with locked_path(lock_file, timeout=0.05, retry_interval=0.01):
                    pass

        assert isinstance(exc_info.value, FileLockError)
        assert "index.lock" in str(exc_info.value)

    def test_retries_until_acquired(self, tmp_path):
        lock_file = tmp_path / "index.lock"
        attempts = []

        def flaky_acquire(handle, exclusive):
            attempts.append(exclusive)
            if len(attempts) < 3:
                raise BlockingIOError("busy")

        with patch.object(file_lock, "_acquire", side_effect=flaky_acquire), patch.object(
            file_lock, "_release"
        ) as release:
            with locked_path(lock_file, exclusive=False, retry_interval=0.001):
                pass

        assert attempts == [False, False, False]
        release.assert_called_once()

    def test_released_on_error(self, tmp_path):
        lock_file = tmp_path / "index.lock"

        with pytest.raises(RuntimeError):
            with locked_path(lock_file):
                raise RuntimeError("boom")

        with locked_path(lock_file, timeout=0.1):
            pass
