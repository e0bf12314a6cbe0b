#!/usr/bin/env python3
"""Tests for the cross-process named lock set."""

import json
import os
import subprocess
import sys
import tempfile
import textwrap
import time
from pathlib import Path
from typing import Optional

import pytest

TOOLS_DIR = Path(__file__).parent.parent / "src" / "python" / "tools"
sys.path.insert(0, str(TOOLS_DIR))

from named_lockset import (  # noqa: E402
    LockEntry,
    LockHeldError,
    NamedLockSet,
    PidLivenessProbe,
    default_lock_path,
    process_start_time,
)


HOLDER_SCRIPT = textwrap.dedent(
    """
    import sys
    from pathlib import Path
    sys.path.insert(0, {tools!r})
    from named_lockset import NamedLockSet

    lockset = NamedLockSet(Path(sys.argv[1]))
    lockset.try_acquire(sys.argv[2])
    print("held", flush=True)
    sys.stdin.read()
    """
).format(tools=str(TOOLS_DIR))


def spawn_holder(lock_path: Path, name: str) -> subprocess.Popen:
    """Start a child process that acquires ``name`` and holds it until stdin closes."""
    proc = subprocess.Popen(
        [sys.executable, "-c", HOLDER_SCRIPT, str(lock_path), name],
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        text=True,
    )
    assert proc.stdout.readline().strip() == "held"
    return proc


def finished_pid() -> int:
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


class FakeProbe:
    def __init__(self, dead: Optional[set] = None):
        self.dead = dead or set()
        self.calls = []

    def is_alive(self, pid, started=None):
        self.calls.append(pid)
        return pid not in self.dead


class TestNamedLockSet:
    """Single-process behaviour of try_acquire / release."""

    def test_named_lock(self):
        """Acquire, contend, release and re-acquire."""
        with tempfile.TemporaryDirectory() as tmpdir:
            lockset = NamedLockSet(Path(tmpdir) / "testlock")

            lockset.try_acquire("test")
            with pytest.raises(LockHeldError):
                lockset.try_acquire("test")
            lockset.try_acquire("test2")
            lockset.release("test")
            lockset.try_acquire("test")
            lockset.release("test")
            lockset.release("test2")

            assert lockset.entries() == []
            print("✓ test_named_lock passed")

    def test_lock_held_names_owner(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            lockset = NamedLockSet(Path(tmpdir) / "testlock")
            lockset.try_acquire("job")

            with pytest.raises(LockHeldError) as excinfo:
                lockset.try_acquire("job")

            assert excinfo.value.owner == os.getpid()
            assert excinfo.value.name == "job"
            print("✓ test_lock_held_names_owner passed")

    def test_release_without_holding_is_noop(self):
        """Releasing a name never acquired does not raise or disturb others."""
        with tempfile.TemporaryDirectory() as tmpdir:
            lockset = NamedLockSet(Path(tmpdir) / "testlock")
            lockset.release("never-held")

            lockset.try_acquire("other")
            lockset.release("never-held")

            assert [entry.name for entry in lockset.entries()] == ["other"]
            print("✓ test_release_without_holding_is_noop passed")

    def test_release_keeps_other_owners(self):
        """Release only drops entries owned by the calling process."""
        with tempfile.TemporaryDirectory() as tmpdir:
            lock_path = Path(tmpdir) / "testlock"
            lock_path.write_text(json.dumps({"name": "job", "pid": 4242, "started": None}) + "\n")
            lockset = NamedLockSet(lock_path, probe=FakeProbe())

            lockset.release("job")

            assert lockset.entries() == [LockEntry(name="job", pid=4242)]
            print("✓ test_release_keeps_other_owners passed")

    def test_stale_entries_are_reclaimed(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            lock_path = Path(tmpdir) / "testlock"
            lines = [
                json.dumps({"name": "job", "pid": 111}),
                json.dumps({"name": "other", "pid": 222}),
            ]
            lock_path.write_text("\n".join(lines) + "\n")
            probe = FakeProbe(dead={111, 222})
            lockset = NamedLockSet(lock_path, probe=probe)

            lockset.try_acquire("job")

            entries = lockset.entries()
            assert [(entry.name, entry.pid) for entry in entries] == [("job", os.getpid())]
            assert set(probe.calls) == {111, 222}
            print("✓ test_stale_entries_are_reclaimed passed")

    def test_live_entry_for_other_name_survives(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            lock_path = Path(tmpdir) / "testlock"
            lock_path.write_text(json.dumps({"name": "other", "pid": 333}) + "\n")
            lockset = NamedLockSet(lock_path, probe=FakeProbe())

            lockset.try_acquire("job")

            names = sorted(entry.name for entry in lockset.entries())
            assert names == ["job", "other"]
            print("✓ test_live_entry_for_other_name_survives passed")

    def test_malformed_lines_are_dropped(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            lock_path = Path(tmpdir) / "testlock"
            lock_path.write_text('not json\n{"name": 5}\n')
            lockset = NamedLockSet(lock_path)

            lockset.try_acquire("job")

            assert [entry.name for entry in lockset.entries()] == ["job"]
            assert "not json" not in lock_path.read_text()
            print("✓ test_malformed_lines_are_dropped passed")

    def test_out_of_range_pids_are_dropped(self):
        """Entries whose pid no process can have are malformed, not fatal."""
        with tempfile.TemporaryDirectory() as tmpdir:
            lock_path = Path(tmpdir) / "testlock"
            lines = [
                json.dumps({"name": "huge", "pid": 2**40}),
                json.dumps({"name": "zero", "pid": 0}),
                json.dumps({"name": "flag", "pid": True}),
                json.dumps({"name": "when", "pid": 333, "started": 10**400}),
                json.dumps({"name": "never", "pid": 444, "started": float("inf")}),
            ]
            lock_path.write_text("\n".join(lines) + "\n")
            lockset = NamedLockSet(lock_path)

            lockset.try_acquire("job")

            assert [entry.name for entry in lockset.entries()] == ["job"]
            print("✓ test_out_of_range_pids_are_dropped passed")

    def test_held_releases_on_error(self):
        """The context manager releases even when the body raises."""
        with tempfile.TemporaryDirectory() as tmpdir:
            lockset = NamedLockSet(Path(tmpdir) / "testlock")

            with pytest.raises(ValueError):
                with lockset.held("job"):
                    assert [entry.name for entry in lockset.entries()] == ["job"]
                    raise ValueError("boom")

            assert lockset.entries() == []
            print("✓ test_held_releases_on_error passed")

    def test_registry_rewritten_whole(self):
        """The registry file holds exactly one JSON line per live entry."""
        with tempfile.TemporaryDirectory() as tmpdir:
            lock_path = Path(tmpdir) / "testlock"
            lockset = NamedLockSet(lock_path)
            for name in ("a", "b", "c"):
                lockset.try_acquire(name)
            lockset.release("b")

            lines = lock_path.read_text().splitlines()
            assert [json.loads(line)["name"] for line in lines] == ["a", "c"]
            assert all(json.loads(line)["pid"] == os.getpid() for line in lines)
            assert (Path(tmpdir) / "testlock.lock").exists()
            print("✓ test_registry_rewritten_whole passed")

    def test_default_lock_path_in_tempdir(self):
        path = default_lock_path()
        assert path.name == "locks.ndjson"
        assert path.parent.name == "media-transcoder"
        assert Path(tempfile.gettempdir()) in path.parents
        print("✓ test_default_lock_path_in_tempdir passed")


class TestPidLivenessProbe:
    """Tests for the OS-backed liveness probe."""

    def test_current_process_alive(self):
        probe = PidLivenessProbe()
        assert probe.is_alive(os.getpid()) is True
        assert probe.is_alive(os.getpid(), process_start_time(os.getpid())) is True
        print("✓ test_current_process_alive passed")

    def test_exited_process_dead(self):
        probe = PidLivenessProbe()
        assert probe.is_alive(finished_pid()) is False
        print("✓ test_exited_process_dead passed")

    def test_unreaped_child_dead(self):
        """A killed child that its parent has not waited for yet is a zombie, not an owner."""
        probe = PidLivenessProbe()
        proc = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
        try:
            assert probe.is_alive(proc.pid) is True
            proc.kill()
            deadline = time.monotonic() + 10
            while probe.is_alive(proc.pid) and time.monotonic() < deadline:
                time.sleep(0.05)
            assert probe.is_alive(proc.pid) is False
        finally:
            proc.wait(timeout=30)
        print("✓ test_unreaped_child_dead passed")

    def test_invalid_pid_dead(self):
        probe = PidLivenessProbe()
        assert probe.is_alive(0) is False
        assert probe.is_alive(-5) is False
        assert probe.is_alive(2**40) is False
        print("✓ test_invalid_pid_dead passed")

    def test_reused_pid_detected_by_start_time(self):
        """A live PID with a different creation time is treated as a different process."""
        probe = PidLivenessProbe()
        started = process_start_time(os.getpid())
        assert started is not None
        assert probe.is_alive(os.getpid(), started - 3600) is False
        print("✓ test_reused_pid_detected_by_start_time passed")


class TestCrossProcess:
    """Mutual exclusion and reclamation between real processes."""

    def test_other_process_holds_lock(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            lock_path = Path(tmpdir) / "testlock"
            holder = spawn_holder(lock_path, "job")
            try:
                lockset = NamedLockSet(lock_path)
                with pytest.raises(LockHeldError) as excinfo:
                    lockset.try_acquire("job")
                assert excinfo.value.owner == holder.pid

                # A different name is unaffected
                lockset.try_acquire("other")
            finally:
                holder.stdin.close()
                holder.wait(timeout=30)
            print("✓ test_other_process_holds_lock passed")

    def test_crashed_holder_is_reclaimed(self):
        """A holder that exits without releasing does not block the next acquirer."""
        with tempfile.TemporaryDirectory() as tmpdir:
            lock_path = Path(tmpdir) / "testlock"
            holder = spawn_holder(lock_path, "job")
            holder.kill()
            holder.wait(timeout=30)

            lockset = NamedLockSet(lock_path)
            lockset.try_acquire("job")

            entries = lockset.entries()
            assert [(entry.name, entry.pid) for entry in entries] == [("job", os.getpid())]
            print("✓ test_crashed_holder_is_reclaimed passed")

    def test_concurrent_acquirers_single_winner(self):
        script = textwrap.dedent(
            """
            import sys
            from pathlib import Path
            sys.path.insert(0, {tools!r})
            from named_lockset import LockHeldError, NamedLockSet

            lockset = NamedLockSet(Path(sys.argv[1]))
            sys.stdin.readline()
            try:
                lockset.try_acquire("job")
                print("won", flush=True)
            except LockHeldError as exc:
                print("lost", exc.owner, flush=True)
            sys.stdin.read()
            """
        ).format(tools=str(TOOLS_DIR))

        with tempfile.TemporaryDirectory() as tmpdir:
            lock_path = Path(tmpdir) / "testlock"
            procs = [
                subprocess.Popen(
                    [sys.executable, "-c", script, str(lock_path)],
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    text=True,
                )
                for _ in range(6)
            ]
            try:
                for proc in procs:
                    proc.stdin.write("go\n")
                    proc.stdin.flush()
                results = [proc.stdout.readline().split() for proc in procs]
            finally:
                for proc in procs:
                    proc.stdin.close()
                    proc.wait(timeout=30)

            winners = [proc.pid for proc, result in zip(procs, results) if result[0] == "won"]
            assert len(winners) == 1
            for result in results:
                if result[0] == "lost":
                    assert int(result[1]) == winners[0]
            print("✓ test_concurrent_acquirers_single_winner passed")


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-v"]))
