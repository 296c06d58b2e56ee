"""Tests for terminal subprocesses."""

import asyncio
import re
import sys
import time

import pytest

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell")


class TestTerminalProcess:
    """Tests for TerminalProcess without a page."""

    def _run(self, tmp_path, command, body):
        from proofcast.terminal import TerminalProcess

        async def scenario():
            process = TerminalProcess(command, tmp_path / "t.log")
            await process.start()
            try:
                return await body(process)
            finally:
                await process.stop(timeout_s=1.0)

        return asyncio.run(scenario())

    def test_output_reaches_buffer_and_log(self, tmp_path):
        """Test that stdout is tee'd into the log file."""
        async def body(process):
            await process.wait_for_output(r"(?m)^hello from sh$")
            return process.output

        output = self._run(tmp_path, "echo hello from sh", body)

        assert "$ echo hello from sh" in output
        assert "hello from sh" in (tmp_path / "t.log").read_text()

    def test_interactive_shell_runs_sent_lines(self, tmp_path):
        """Test send() against an interactive sh."""
        async def body(process):
            await process.send("echo hello", pause_ms=0)
            return await process.wait_for_output(r"(?m)^hello$")

        assert self._run(tmp_path, None, body).group(0) == "hello"

    def test_wait_for_output_times_out(self, tmp_path):
        """Test that a pattern that never shows up raises ElementNotFoundError."""
        from proofcast.errors import ElementNotFoundError

        async def body(process):
            await process.wait_for_output("never printed", timeout_ms=200)

        with pytest.raises(ElementNotFoundError):
            self._run(tmp_path, "sleep 5", body)

    def test_send_after_exit_is_a_usage_error(self, tmp_path):
        """Test that a finished process rejects input."""
        from proofcast.errors import SessionUsageError

        async def body(process):
            await process.process.wait()
            await process.send("echo late")

        with pytest.raises(SessionUsageError):
            self._run(tmp_path, "true", body)

    def test_stop_ends_a_long_command(self, tmp_path):
        """Test that stop() does not wait for the command to finish."""
        async def body(process):
            await process.wait_for_output(r"(?m)^sleeping$")
            started = time.monotonic()
            await process.stop(timeout_s=1.0)
            return time.monotonic() - started, process.output

        elapsed, output = self._run(tmp_path, "echo sleeping; sleep 8; echo done", body)

        assert elapsed < 4
        assert not re.search(r"(?m)^done$", output)

    def test_stop_reaches_background_children(self, tmp_path):
        """Test that a child holding the pipes open does not block stop()."""
        async def body(process):
            await process.wait_for_output(r"(?m)^started$")
            started = time.monotonic()
            await process.stop(timeout_s=1.0)
            return time.monotonic() - started

        assert self._run(tmp_path, "sleep 8 & echo started; wait", body) < 4

    def test_stop_kills_a_process_ignoring_sigterm(self, tmp_path):
        """Test the escalation to SIGKILL."""
        async def body(process):
            await process.wait_for_output(r"(?m)^trapped$")
            started = time.monotonic()
            await process.stop(timeout_s=1.0)
            return time.monotonic() - started, process.running

        elapsed, running = self._run(tmp_path, "trap '' TERM; echo trapped; sleep 8", body)

        assert elapsed < 4
        assert not running

    def test_stop_twice_is_harmless(self, tmp_path):
        """Test that teardown can stop a process its scenario already stopped."""
        async def body(process):
            await process.stop(timeout_s=1.0)
            await process.stop(timeout_s=1.0)
            return process.running

        assert self._run(tmp_path, "sleep 8", body) is False
