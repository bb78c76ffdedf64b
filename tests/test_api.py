import dataclasses
import errno
import io
import zipfile

import pytest

from familyvideo import app as app_module
from familyvideo.app import create_app
from familyvideo.config import get_paths
from familyvideo.errors import JellyfinAuthError, JellyfinConnectionError
from familyvideo.services import media, nfo
from familyvideo.services.jellyfin import NowPlayingResult


def _videos_by_id(client):
    response = client.get("/videos")
    assert response.status_code == 200
    return {video["id"]: video for video in response.get_json()["data"]}


def test_list_videos(client):
    videos = _videos_by_id(client)

    assert videos["vid1"]["isTagged"] is False
    assert videos["vid1"]["thumbnailUrl"] == "/videos/vid1/thumbnail"
    assert videos["vid1"]["dateCreated"] == "2019-07-04"
    assert "thumbnailUrl" not in videos["vid2"]
    assert videos["vid2"]["dateCreated"] == "2021-01-02"


def test_saving_metadata_marks_video_tagged(client, fake_jellyfin, media_root):
    payload = {
        "title": "Beach day",
        "date": "2019-07-04",
        "people": ["Alice", " alice ", "Bob"],
        "tags": ["Summer"],
        "rating": 9,
        "description": "  Waves  ",
    }

    response = client.post("/videos/vid1/metadata", json=payload)

    assert response.status_code == 200
    body = response.get_json()
    assert body["data"]["isTagged"] is True
    assert "synced" in body["message"]
    assert (media_root / "beach.nfo").exists()
    item_id, metadata = fake_jellyfin.updates[0]
    assert item_id == "vid1"
    assert metadata.people == ["Alice", "Bob"]
    assert metadata.description == "Waves"
    assert _videos_by_id(client)["vid1"]["isTagged"] is True

    saved = client.get("/videos/vid1/metadata").get_json()["data"]
    assert saved["title"] == "Beach day"
    assert saved["rating"] == 9


def test_saving_metadata_with_prefixed_path(client, media_root):
    response = client.post("/videos/vid2/metadata", json={"title": "Party"})

    assert response.status_code == 200
    assert (media_root / "2020" / "birthday.nfo").exists()


def test_jellyfin_sync_failure_is_not_fatal(client, fake_jellyfin, media_root):
    fake_jellyfin.update_ok = False

    response = client.post("/videos/vid1/metadata", json={"title": "Beach"})

    assert response.status_code == 200
    assert "next library scan" in response.get_json()["message"]
    assert (media_root / "beach.nfo").exists()


@pytest.mark.parametrize(
    "payload",
    [
        {"title": "x", "rating": 11},
        {"title": "x", "rating": 0},
        {"title": "x", "rating": "5"},
        {"title": "x", "rating": True},
        {"title": "x", "rating": 4.5},
        {"title": "   "},
        {"title": "x", "date": "July 4th"},
        {"title": "x", "date": "2019-02-30"},
        {"title": "x", "people": "Alice"},
        ["not", "an", "object"],
    ],
)
def test_invalid_metadata_rejected_before_write(client, fake_jellyfin, media_root, payload):
    response = client.post("/videos/vid1/metadata", json=payload)

    assert response.status_code == 400
    assert response.get_json()["error"] == "Validation failed"
    assert not (media_root / "beach.nfo").exists()
    assert fake_jellyfin.updates == []


def test_metadata_unknown_video(client):
    assert client.get("/videos/nope/metadata").status_code == 404
    response = client.post("/videos/nope/metadata", json={"title": "x"})
    assert response.status_code == 404
    assert response.get_json()["error"] == "Not found"


def test_metadata_without_nfo_is_null(client):
    body = client.get("/videos/vid1/metadata").get_json()
    assert body["data"] is None


@pytest.mark.parametrize(
    "error, status",
    [
        (JellyfinAuthError("Invalid API key or insufficient permissions."), 401),
        (JellyfinConnectionError("Could not connect to Jellyfin server."), 503),
    ],
)
def test_jellyfin_errors_map_to_status(client, fake_jellyfin, error, status):
    fake_jellyfin.fail_with = error

    response = client.get("/videos")

    assert response.status_code == status
    assert response.get_json() == {"error": error.label, "details": error.details}


@pytest.mark.parametrize(
    "error, status, label",
    [
        (PermissionError(errno.EACCES, "Permission denied"), 403, "Permission denied"),
        (OSError(errno.ENOSPC, "No space left on device"), 507, "Disk full"),
        (OSError(errno.EIO, "I/O error"), 500, "Internal server error"),
    ],
)
def test_filesystem_errors_map_to_status(client, monkeypatch, error, status, label):
    def failing_write(*args, **kwargs):
        raise error

    monkeypatch.setattr(nfo, "write_nfo", failing_write)

    response = client.post("/videos/vid1/metadata", json={"title": "x"})

    assert response.status_code == status
    assert response.get_json()["error"] == label


def test_thumbnail_proxy(client, fake_jellyfin):
    assert client.get("/videos/vid1/thumbnail").status_code == 404

    fake_jellyfin.thumbnails["vid1"] = b"\xff\xd8jpeg"
    response = client.get("/videos/vid1/thumbnail")

    assert response.status_code == 200
    assert response.data == b"\xff\xd8jpeg"
    assert response.mimetype == "image/jpeg"
    assert response.headers["Cache-Control"] == "public, max-age=86400"


def test_now_playing(client, fake_jellyfin):
    assert client.get("/videos/now-playing").get_json()["data"] is None
    assert fake_jellyfin.playing_user is None

    fake_jellyfin.playing = NowPlayingResult(
        item={"Id": "vid1", "Name": "Beach day", "ImageTags": {"Primary": "x"}},
        device_name="TV",
    )
    data = client.get("/videos/now-playing").get_json()["data"]

    assert data == {"id": "vid1", "name": "Beach day", "thumbnailUrl": "/videos/vid1/thumbnail", "deviceName": "TV"}


def test_videos_config(client):
    data = client.get("/videos/config").get_json()["data"]
    assert data == {
        "jellyfinUrl": "http://jellyfin.test:8096",
        "people": ["Alice", "Bob"],
        "tags": ["Christmas", "Birthday"],
    }


def test_upload_config(client, monkeypatch):
    monkeypatch.setattr(media.shutil, "which", lambda name: None)

    data = client.get("/upload/config").get_json()["data"]

    assert data["maxSizeMb"] == 2048
    assert data["maxDvdSizeMb"] == 10240
    assert "video/mp4" in data["supportedTypes"]
    assert data["dvdToolsAvailable"] is False


def test_upload_video(client, media_root, fake_jellyfin):
    response = client.post(
        "/upload/video",
        data={"file": (io.BytesIO(b"\0" * 2048), "Beach Day.mp4", "video/mp4")},
        content_type="multipart/form-data",
    )

    assert response.status_code == 201
    data = response.get_json()["data"]
    assert data["filename"].endswith("_Beach Day.mp4")
    assert data["size"] == 2048
    assert (media_root / data["filename"]).exists()
    assert fake_jellyfin.refreshes == 1


def test_upload_video_rejects_unsupported_type(client, media_root, settings):
    response = client.post(
        "/upload/video",
        data={"file": (io.BytesIO(b"hello"), "notes.txt", "text/plain")},
        content_type="multipart/form-data",
    )

    assert response.status_code == 400
    assert list(media_root.iterdir()) == []
    assert list((settings.data_dir / "uploads").iterdir()) == []


def test_upload_video_requires_file(client):
    response = client.post("/upload/video", data={}, content_type="multipart/form-data")
    assert response.status_code == 400


def test_dvd_upload_without_tools(client, monkeypatch):
    monkeypatch.setattr(media.shutil, "which", lambda name: None)

    response = client.post(
        "/upload/dvd",
        data={"file": (io.BytesIO(b"zip"), "disc.zip", "application/zip")},
        content_type="multipart/form-data",
    )

    assert response.status_code == 503
    assert response.get_json()["error"] == "DVD tools not available"


def test_dvd_upload_requires_zip(client, fake_tools):
    response = client.post(
        "/upload/dvd",
        data={"file": (io.BytesIO(b"x"), "disc.iso", "application/octet-stream")},
        content_type="multipart/form-data",
    )
    assert response.status_code == 400


def _dvd_zip_bytes():
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name in ("VIDEO_TS.IFO", "VTS_01_0.IFO", "VTS_01_1.VOB", "VTS_01_2.VOB"):
            archive.writestr(f"VIDEO_TS/{name}", b"\0" * 16)
    buffer.seek(0)
    return buffer


def test_dvd_zip_upload_runs_job(client, fake_tools, media_root, fake_jellyfin):
    response = client.post(
        "/upload/dvd",
        data={"file": (_dvd_zip_bytes(), "Summer.zip", "application/zip")},
        content_type="multipart/form-data",
    )

    assert response.status_code == 202
    job_id = response.get_json()["data"]["id"]

    job = client.get(f"/jobs/{job_id}").get_json()["data"]
    assert job["status"] == "success"
    assert job["percent"] == 100
    assert len(job["result"]["files"]) == 2
    assert all("_Summer_ch" in name for name in job["result"]["files"])
    assert sorted(entry.name for entry in media_root.iterdir()) == sorted(job["result"]["files"])
    assert fake_jellyfin.refreshes == 1


def test_dvd_folder_upload_runs_job(client, fake_tools, media_root):
    files = [
        (io.BytesIO(b"\0" * 16), f"Trip_VIDEO_TS/{name}")
        for name in ("VIDEO_TS.IFO", "VTS_01_0.IFO", "VTS_01_1.VOB", "VTS_01_2.VOB")
    ]

    response = client.post(
        "/upload/dvd-folder",
        data={"files": files, "folderName": "Trip_VIDEO_TS"},
        content_type="multipart/form-data",
    )

    assert response.status_code == 202
    job = client.get(f"/jobs/{response.get_json()['data']['id']}").get_json()["data"]
    assert job["status"] == "success"
    assert all("_Trip_ch" in name for name in job["result"]["files"])
    assert not [entry for entry in media_root.iterdir() if entry.name.startswith(".tmp_dvd_")]


def test_failed_dvd_job_reports_error(client, fake_tools):
    fake_tools.ffmpeg_returncode = 1

    response = client.post(
        "/upload/dvd",
        data={"file": (_dvd_zip_bytes(), "Summer.zip", "application/zip")},
        content_type="multipart/form-data",
    )

    job = client.get(f"/jobs/{response.get_json()['data']['id']}").get_json()["data"]
    assert job["status"] == "failed"
    assert job["phase"] == "error"
    assert job["error"] == "DVD extraction failed"
    assert "Failed to extract any chapters" in job["details"]


def test_restart_removes_staging_of_interrupted_jobs(settings, fake_jellyfin, fake_tools, media_root, monkeypatch):
    monkeypatch.setattr(app_module, "enqueue_job", lambda db_path, job_id, job_callable: None)
    client = create_app(settings=settings, jellyfin=fake_jellyfin, configure_logging=False).test_client()
    upload_dir = get_paths(settings.data_dir).upload_dir

    zip_job = client.post(
        "/upload/dvd",
        data={"file": (_dvd_zip_bytes(), "Summer.zip", "application/zip")},
        content_type="multipart/form-data",
    ).get_json()["data"]
    client.post(
        "/upload/dvd-folder",
        data={"files": [(io.BytesIO(b"\0" * 16), "VTS_01_1.VOB")], "folderName": "Trip"},
        content_type="multipart/form-data",
    )
    assert zip_job["status"] == "queued"
    assert list(upload_dir.glob("*.part"))
    assert list(media_root.glob(".tmp_dvd_*"))

    restarted = create_app(settings=settings, jellyfin=fake_jellyfin, configure_logging=False).test_client()

    assert restarted.get(f"/jobs/{zip_job['id']}").get_json()["data"]["status"] == "stale"
    assert not list(upload_dir.glob("*.part"))
    assert not list(media_root.glob(".tmp_dvd_*"))


def test_unknown_job(client):
    response = client.get("/jobs/999")
    assert response.status_code == 404


def test_request_too_large(settings, fake_jellyfin, inline_background):
    tiny = dataclasses.replace(settings, max_upload_size_mb=1, max_dvd_upload_size_mb=1)
    client = create_app(settings=tiny, jellyfin=fake_jellyfin, configure_logging=False).test_client()

    response = client.post(
        "/upload/video",
        data={"file": (io.BytesIO(b"\0" * (2 * 1024 * 1024)), "big.mp4", "video/mp4")},
        content_type="multipart/form-data",
    )

    assert response.status_code == 413
    assert response.get_json()["error"] == "File too large"


def test_cors_header(client):
    response = client.get("/videos/config")
    assert response.headers["Access-Control-Allow-Origin"] == "http://localhost:3000"


def test_library_page_filters(client, media_root):
    (media_root / "beach.nfo").write_text("<movie><title>Beach</title></movie>", encoding="utf-8")

    untagged = client.get("/").get_data(as_text=True)
    tagged = client.get("/?filter=tagged").get_data(as_text=True)

    assert "Birthday" in untagged and "Beach day" not in untagged
    assert "Beach day" in tagged and "Birthday</a>" not in tagged
    assert "Untagged (1)" in untagged


def test_tag_form_saves(client, media_root, fake_jellyfin):
    page = client.get("/library/vid1/tag")
    assert page.status_code == 200

    response = client.post(
        "/library/vid1/tag",
        data={
            "title": "Beach",
            "people": ["Alice", "Smith, John"],
            "people_other": "Carol, Dan",
            "tags_other": "Summer",
            "rating": "7",
        },
    )

    assert response.status_code == 302
    metadata = fake_jellyfin.updates[0][1]
    assert metadata.people == ["Alice", "Smith, John", "Carol", "Dan"]
    assert metadata.tags == ["Summer"]
    assert metadata.rating == 7
    assert (media_root / "beach.nfo").exists()


def test_tag_form_keeps_names_with_commas(client, fake_jellyfin):
    client.post(
        "/library/vid1/tag",
        data={"title": "Beach", "people_other": "Carol", "people": "Smith, John"},
    )

    page = client.get("/library/vid1/tag").get_data(as_text=True)
    assert 'name="people" value="Smith, John" checked' in page
    assert 'name="people" value="Carol" checked' in page

    client.post(
        "/library/vid1/tag",
        data={"title": "Beach", "people": ["Smith, John", "Carol"]},
    )
    assert fake_jellyfin.updates[-1][1].people == ["Smith, John", "Carol"]


def test_tag_form_shows_validation_errors(client, media_root):
    response = client.post("/library/vid1/tag", data={"title": "Beach", "rating": "12"})

    assert response.status_code == 400
    assert "rating must be between 1 and 10" in response.get_data(as_text=True)
    assert not (media_root / "beach.nfo").exists()
