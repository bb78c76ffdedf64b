import pytest

from familyvideo import app as app_module
from familyvideo.app import create_app
from familyvideo.config import Settings
from familyvideo.services import dvd, jobs, media, upload
from helpers import FakeJellyfin, FakeTools


@pytest.fixture()
def media_root(tmp_path):
    root = tmp_path / "media"
    root.mkdir()
    return root


@pytest.fixture()
def settings(tmp_path, media_root):
    return Settings(
        jellyfin_url="http://jellyfin.test:8096",
        jellyfin_api_key="test-api-key",
        media_path=media_root,
        data_dir=tmp_path / "data",
        preset_people=("Alice", "Bob"),
        preset_tags=("Christmas", "Birthday"),
    )


@pytest.fixture()
def fake_jellyfin(media_root):
    return FakeJellyfin(
        [
            {
                "Id": "vid1",
                "Name": "Beach day",
                "Path": str(media_root / "beach.mp4"),
                "ImageTags": {"Primary": "abc"},
                "PremiereDate": "2019-07-04T00:00:00.0000000Z",
            },
            {
                "Id": "vid2",
                "Name": "Birthday",
                "Path": "/home-videos/2020/birthday.mkv",
                "ImageTags": {},
                "DateCreated": "2021-01-02T10:00:00.0000000Z",
            },
        ]
    )


@pytest.fixture()
def inline_background(monkeypatch):
    """Run queued jobs and fire-and-forget side effects synchronously."""

    def run_now(func, *args, **kwargs):
        func(*args, **kwargs)

    def enqueue_now(db_path, job_id, job_callable):
        jobs.run_job(db_path, job_id, job_callable)

    monkeypatch.setattr(upload, "fire_and_forget", run_now)
    monkeypatch.setattr(dvd, "fire_and_forget", run_now)
    monkeypatch.setattr(app_module, "enqueue_job", enqueue_now)


@pytest.fixture()
def fake_tools(monkeypatch):
    tools = FakeTools()
    monkeypatch.setattr(media.shutil, "which", lambda name: f"/usr/bin/{name}")
    monkeypatch.setattr(media, "_run_subprocess", tools)
    return tools


@pytest.fixture()
def dvd_dir(tmp_path):
    """A disc folder with a VIDEO_TS directory holding menu and title files."""

    disc = tmp_path / "disc"
    video_ts = disc / "VIDEO_TS"
    video_ts.mkdir(parents=True)
    for name in ("VIDEO_TS.IFO", "VTS_01_0.IFO", "VTS_01_0.VOB", "VTS_01_1.VOB", "VTS_01_2.VOB"):
        (video_ts / name).write_bytes(b"\0" * 16)
    return disc


@pytest.fixture()
def app(settings, fake_jellyfin, inline_background):
    application = create_app(settings=settings, jellyfin=fake_jellyfin, configure_logging=False)
    application.config["TESTING"] = True
    return application


@pytest.fixture()
def client(app):
    return app.test_client()
