import stat
import sys
import textwrap

import pytest

from ilovevideo import config
from ilovevideo import main as app_module
from ilovevideo.identity import AuthUser
from ilovevideo.usage import MemoryUsageStore, UsageLedger

FAKE_FFMPEG = textwrap.dedent(
    """\
    import os
    import sys
    import time

    args = sys.argv[1:]
    src = args[args.index("-i") + 1]
    dst = args[-1]
    mode = os.environ.get("FAKE_FFMPEG_MODE", "shrink")
    log = os.environ.get("FAKE_FFMPEG_ARGS_LOG")
    if log:
        with open(log, "w") as f:
            f.write("\\n".join(args))

    with open(src, "rb") as f:
        data = f.read()

    if mode == "fail":
        sys.stderr.write("x" * 1000)
        sys.stderr.write("\\nInvalid data found when processing input " + src + "\\n")
        sys.exit(1)
    if mode == "nooutput":
        sys.exit(0)
    if mode == "sleep":
        time.sleep(30)

    if mode == "shrink":
        out = data[: max(1, len(data) // 2)]
    elif mode == "copy":
        out = data
    else:
        out = data + data
    with open(dst, "wb") as f:
        f.write(out)
    """
)


class FakeProvider:
    def __init__(self):
        self.users = {}
        self.pro = set()
        self.fail_pro = False
        self.activated = []

    def get_user(self, token):
        return self.users.get(token)

    def is_pro(self, user_id):
        if self.fail_pro:
            raise RuntimeError("profiles table unreachable")
        return user_id in self.pro

    def activate_pro(self, user_id, reference):
        self.activated.append((user_id, reference))

    def add_user(self, token, user_id, email=None, pro=False):
        self.users[token] = AuthUser(id=user_id, email=email)
        if pro:
            self.pro.add(user_id)


@pytest.fixture(autouse=True)
def isolated_app(tmp_path, monkeypatch):
    """Point the app at throwaway scratch dirs and in-memory collaborators."""
    upload_dir = tmp_path / "uploads"
    output_dir = tmp_path / "outputs"
    upload_dir.mkdir()
    output_dir.mkdir()
    monkeypatch.setattr(app_module, "UPLOAD_DIR", upload_dir)
    monkeypatch.setattr(app_module, "OUTPUT_DIR", output_dir)
    monkeypatch.setattr(app_module, "ledger", UsageLedger(MemoryUsageStore()))
    monkeypatch.setattr(app_module, "identity_provider", FakeProvider())
    monkeypatch.setattr(config, "FFMPEG", str(tmp_path / "no-ffmpeg-here"))
    monkeypatch.setattr(config, "FFMPEG_ULIMITS", False)
    return upload_dir, output_dir


@pytest.fixture
def scratch(isolated_app):
    return isolated_app


@pytest.fixture
def provider(isolated_app):
    return app_module.identity_provider


@pytest.fixture
def fake_ffmpeg(tmp_path, monkeypatch):
    script = tmp_path / "ffmpeg"
    script.write_text(f"#!{sys.executable}\n" + FAKE_FFMPEG)
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    monkeypatch.setattr(config, "FFMPEG", str(script))
    monkeypatch.setenv("FAKE_FFMPEG_MODE", "shrink")
    return script
