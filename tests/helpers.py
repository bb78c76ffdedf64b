import subprocess
import zipfile
from pathlib import Path


LSDVD_OUTPUT = """lsdvd = {
  'device' : '/tmp/disc',
  'title' : 'FAMILY_DVD',
  'vmg_id' : 'DVDVIDEO-VMG',
  'provider_id' : '',
  'track' : [
    {
      'ix' : 1,
      'length' : 77.000,
      'vts_id' : 'DVDVIDEO-VTS',
      'vts' : 1,
      'ttn' : 1,
      'fps' : 29.97,
      'chapter' : [
        {
          'ix' : 1,
          'length' : 2.000,
          'startcell' : 1,
        },
        {
          'ix' : 2,
          'length' : 30.000,
          'startcell' : 2,
        },
        {
          'ix' : 3,
          'length' : 45.000,
          'startcell' : 3,
        },
      ],
    },
  ],
  'longest_track' : 1,
}
"""


class FakeJellyfin:
    """In-memory stand-in for JellyfinClient."""

    def __init__(self, items=None):
        self.items = {item["Id"]: item for item in items or []}
        self.thumbnails = {}
        self.updates = []
        self.refreshes = 0
        self.playing = None
        self.playing_user = "unset"
        self.fail_with = None
        self.update_ok = True

    def get_items(self):
        if self.fail_with is not None:
            raise self.fail_with
        return list(self.items.values())

    def get_item(self, item_id):
        return self.items.get(item_id)

    def get_thumbnail_image(self, item_id):
        return self.thumbnails.get(item_id)

    def update_item_metadata(self, item_id, metadata):
        self.updates.append((item_id, metadata))
        return self.update_ok

    def get_now_playing(self, username):
        self.playing_user = username
        return self.playing

    def refresh_home_videos_library(self):
        self.refreshes += 1


class FakeTools:
    """Records tool invocations and plays the parts of lsdvd, ffmpeg and unzip."""

    def __init__(self, lsdvd_output=LSDVD_OUTPUT):
        self.lsdvd_output = lsdvd_output
        self.calls = []
        self.ffmpeg_returncode = 0
        self.ffmpeg_bytes = 4096

    def tool_calls(self, name):
        return [args for args in self.calls if Path(args[0]).name == name]

    def __call__(self, args, timeout=30):
        self.calls.append(list(args))
        tool = Path(args[0]).name
        if tool == "lsdvd":
            return subprocess.CompletedProcess(args, 0, stdout=self.lsdvd_output, stderr="")
        if tool == "ffmpeg":
            if self.ffmpeg_returncode == 0:
                Path(args[-1]).write_bytes(b"\0" * self.ffmpeg_bytes)
            return subprocess.CompletedProcess(
                args, self.ffmpeg_returncode, stdout="", stderr="encode failed"
            )
        if tool == "unzip":
            with zipfile.ZipFile(args[3]) as archive:
                archive.extractall(args[5])
            return subprocess.CompletedProcess(args, 0, stdout="", stderr="")
        raise AssertionError(f"unexpected tool {args}")
