import uuid
from pathlib import Path

import pytest

import database
import tools
from errors import NotFound
from tempo import AubioEstimator
from worker import Services

REGULAR_120_BPM_BEATS = "\n".join(f"{i * 0.5:.3f}" for i in range(8)) + "\n"


class FakeRunner:
    """Answers ffmpeg and aubio calls without starting processes."""

    def __init__(self, tempo_output="118.0 bpm\n", beat_output=REGULAR_120_BPM_BEATS, fail=None):
        self.tempo_output = tempo_output
        self.beat_output = beat_output
        self.fail = fail  # callable(name, args) -> exception to raise, or None
        self.calls = []

    def run(self, name, args, timeout):
        self.calls.append((name, list(args), timeout))
        if self.fail:
            error = self.fail(name, args)
            if error is not None:
                raise error
        if name == tools.FFMPEG_BIN:
            Path(args[-1]).write_bytes(b"RIFF fake audio")
            return ""
        if name == tools.AUBIO_BIN and args[0] == "tempo":
            return self.tempo_output
        if name == tools.AUBIO_BIN and args[0] == "beat":
            return self.beat_output
        raise AssertionError(f"unexpected tool call {name} {args}")

    def ffmpeg_calls(self):
        return [args for name, args, _ in self.calls if name == tools.FFMPEG_BIN]


class FakeStorage:
    def __init__(self):
        self.objects = {}
        self.content_types = {}

    def download(self, key, dest_path):
        if key not in self.objects:
            raise NotFound(f"object {key} not found")
        Path(dest_path).write_bytes(self.objects[key])

    def upload(self, key, src_path, content_type):
        self.objects[key] = Path(src_path).read_bytes()
        self.content_types[key] = content_type


@pytest.fixture
def store(tmp_path, monkeypatch):
    monkeypatch.setattr(database, "DATABASE_URL", "")
    monkeypatch.setattr(database, "DB_PATH", str(tmp_path / "jobs.db"))
    database.init_db()
    return database


@pytest.fixture
def make_track(store):
    def _make_track(object_key="uploads/track.mp3"):
        track_id = str(uuid.uuid4())
        with store.db() as conn:
            conn.execute(
                "INSERT INTO tracks (id, original_object_key, created_at) VALUES (?, ?, ?)",
                (track_id, object_key, store._now()),
            )
        return track_id

    return _make_track


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def storage():
    fake = FakeStorage()
    fake.objects["uploads/track.mp3"] = b"ID3 source audio"
    return fake


@pytest.fixture
def services(runner, storage):
    return Services(runner=runner, storage=storage, estimator=AubioEstimator(runner))
