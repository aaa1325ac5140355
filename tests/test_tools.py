import sys
import time

import pytest

from errors import JobTimeout, ToolFailure
from tools import FFMPEG_BIN, Deadline, ToolRunner, normalize_audio


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def test_runner_returns_stdout():
    output = ToolRunner().run(sys.executable, ["-c", "print('131.72 bpm')"], timeout=30)

    assert output == "131.72 bpm\n"


def test_runner_reports_exit_status_and_stderr():
    script = "import sys; sys.stderr.write('Invalid data found when processing input'); sys.exit(3)"

    with pytest.raises(ToolFailure) as exc_info:
        ToolRunner().run(sys.executable, ["-c", script], timeout=30)

    message = str(exc_info.value)
    assert "exited with status 3" in message
    assert "Invalid data found" in message
    assert exc_info.value.tool == sys.executable


def test_runner_keeps_the_tail_of_long_output():
    script = "import sys; sys.stderr.write('a' * 5000 + 'END'); sys.exit(1)"

    with pytest.raises(ToolFailure) as exc_info:
        ToolRunner().run(sys.executable, ["-c", script], timeout=30)

    assert exc_info.value.output.endswith("END")
    assert len(exc_info.value.output) == 400


def test_runner_kills_tool_on_timeout():
    with pytest.raises(JobTimeout, match="timed out"):
        ToolRunner().run(sys.executable, ["-c", "import time; time.sleep(10)"], timeout=0.3)


def test_runner_reports_missing_binary():
    with pytest.raises(ToolFailure, match="could not start"):
        ToolRunner().run("definitely-not-an-installed-tool", [], timeout=5)


def test_deadline_counts_down_and_expires():
    clock = FakeClock()
    deadline = Deadline(300, clock=clock)

    clock.now += 120
    assert deadline.check("aubio tempo") == pytest.approx(180)

    clock.now += 181
    assert deadline.remaining() == 0
    with pytest.raises(JobTimeout, match="timed out after 300s before ffmpeg render"):
        deadline.check("ffmpeg render")


def test_normalize_audio_passes_remaining_budget_as_timeout(runner, tmp_path):
    clock = FakeClock()
    deadline = Deadline(60, clock=clock)
    clock.now += 15

    normalize_audio(runner, "in.flac", str(tmp_path / "out.wav"), deadline)

    name, args, timeout = runner.calls[0]
    assert name == FFMPEG_BIN
    assert args == ["-y", "-i", "in.flac", "-ac", "1", "-ar", "44100", str(tmp_path / "out.wav")]
    assert timeout == pytest.approx(45)


def test_deadline_call_returns_result_within_budget():
    assert Deadline(30).call("upload", lambda a, b: a + b, 2, 3) == 5


def test_deadline_call_propagates_errors():
    def broken_upload():
        raise ToolFailure("r2", "access denied")

    with pytest.raises(ToolFailure, match="access denied"):
        Deadline(30).call("upload", broken_upload)


def test_deadline_call_stops_waiting_when_budget_runs_out():
    started = time.monotonic()

    with pytest.raises(JobTimeout, match="timed out after 0.2s during upload"):
        Deadline(0.2).call("upload", time.sleep, 1.0)

    assert time.monotonic() - started < 0.9


def test_deadline_call_refuses_to_start_when_expired():
    clock = FakeClock()
    deadline = Deadline(10, clock=clock)
    clock.now += 11
    started = []

    with pytest.raises(JobTimeout, match="before download"):
        deadline.call("download", started.append, 1)
    assert started == []
