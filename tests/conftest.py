"""
Shared fixtures.

The resolver and the transcoder are replaced by small Python scripts that
speak the same command-line contract as yt-dlp and ffmpeg, so process
supervision, timeouts, signals and segment rotation run for real.
"""
import asyncio
import os
import sys
import time

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import pytest
import pytest_asyncio

from pipeline_manager import ChannelPipelineManager
from resolver import LocatorResolver
from segment_store import SegmentStore
from supervisor import TranscodeSupervisor
from transcoding import HlsProfile


FAKE_RESOLVER = r'''
import os
import signal
import sys
import time

ref = sys.argv[-1]

if "badref" in ref or "missing" in ref:
    sys.stderr.write("ERROR: [generic] Unable to extract video data for " + ref + "\n")
    sys.exit(1)
if "slow" in ref:
    time.sleep(30)
if "empty" in ref:
    sys.exit(0)
if "crash" in ref and "crash_once" not in ref:
    os.kill(os.getpid(), signal.SIGKILL)
if "flaky" in ref:
    counter = os.path.join(os.environ["FAKE_STATE_DIR"], "resolver_calls")
    calls = int(open(counter).read()) + 1 if os.path.exists(counter) else 1
    with open(counter, "w") as fh:
        fh.write(str(calls))
    if calls <= 2:
        sys.stderr.write("ERROR: This live event will begin in a few moments\n")
        sys.exit(1)
if "twoformats" in ref:
    print(ref + "#video")
    print(ref + "#audio")
    sys.exit(0)

print(ref)
'''


FAKE_FFMPEG = r'''
import math
import os
import re
import signal
import sys
import time

args = sys.argv[1:]


def opt(name, default=None):
    if name in args:
        return args[args.index(name) + 1]
    return default


locator = opt("-i", "")
pattern = opt("-hls_segment_filename")
playlist = args[-1]
hls_time = float(opt("-hls_time", "1"))
list_size = int(opt("-hls_list_size", "3"))
threshold = int(opt("-hls_delete_threshold", "1"))
interval = float(os.environ.get("FAKE_FFMPEG_INTERVAL", "0.05"))
state_dir = os.environ.get("FAKE_STATE_DIR", os.path.dirname(playlist))

if os.environ.get("FAKE_FFMPEG_IGNORE_TERM") == "1":
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
else:
    signal.signal(signal.SIGTERM, lambda *_: sys.exit(255))

with open(os.path.join(state_dir, "ffmpeg_launches"), "a") as fh:
    fh.write(locator + "\n")

exit_after = None
match = re.search(r"exit_after=([0-9.]+)", locator)
if match:
    exit_after = float(match.group(1))
if "crash_once" in locator:
    marker = os.path.join(state_dir, "crashed_once")
    if not os.path.exists(marker):
        open(marker, "w").close()
        exit_after = 0.3

if "nostart" in locator:
    sys.stderr.write(locator + ": Server returned 403 Forbidden (access denied)\n")
    sys.exit(1)
if "nospace" in locator and exit_after is None:
    sys.stderr.write("Error opening output: No space left on device\n")
    sys.exit(1)
if "nooutput" in locator:
    time.sleep(60)
    sys.exit(0)

directory = os.path.dirname(playlist)
window = []
sequence = 0
if os.path.exists(playlist):
    with open(playlist) as fh:
        text = fh.read()
    found = re.search(r"#EXT-X-MEDIA-SEQUENCE:(\d+)", text)
    window = [line.strip() for line in text.splitlines() if line.strip().endswith(".ts")]
    sequence = (int(found.group(1)) if found else 0) + len(window)

retained = list(window)
started = time.monotonic()
while True:
    if exit_after is not None and time.monotonic() - started >= exit_after:
        if "nospace" in locator:
            sys.stderr.write("Error writing segment: No space left on device\n")
        else:
            sys.stderr.write(locator + ": Connection reset by peer\n")
        sys.stderr.flush()
        sys.exit(1)

    segment_path = pattern % sequence
    with open(segment_path, "wb") as fh:
        fh.write(b"\x47" * 188)
    name = os.path.basename(segment_path)
    window.append(name)
    retained.append(name)
    window = window[-list_size:]

    lines = [
        "#EXTM3U",
        "#EXT-X-VERSION:3",
        "#EXT-X-TARGETDURATION:%d" % int(math.ceil(hls_time)),
        "#EXT-X-MEDIA-SEQUENCE:%d" % (sequence - len(window) + 1),
    ]
    for entry in window:
        lines.append("#EXTINF:%.6f," % hls_time)
        lines.append(entry)
    tmp = playlist + ".tmp"
    with open(tmp, "w") as fh:
        fh.write("\n".join(lines) + "\n")
    os.replace(tmp, playlist)

    while len(retained) > list_size + threshold:
        old = retained.pop(0)
        try:
            os.remove(os.path.join(directory, old))
        except FileNotFoundError:
            pass

    sequence += 1
    time.sleep(interval)
'''


@pytest.fixture
def state_dir(tmp_path, monkeypatch):
    path = tmp_path / "state"
    path.mkdir()
    monkeypatch.setenv("FAKE_STATE_DIR", str(path))
    return path


@pytest.fixture
def fake_resolver(tmp_path, state_dir):
    script = tmp_path / "fake_ytdlp.py"
    script.write_text(FAKE_RESOLVER)
    return [sys.executable, str(script)]


@pytest.fixture
def fake_ffmpeg(tmp_path, state_dir):
    script = tmp_path / "fake_ffmpeg.py"
    script.write_text(FAKE_FFMPEG)
    return [sys.executable, str(script)]


@pytest.fixture
def store(tmp_path):
    return SegmentStore(base_dir=str(tmp_path / "streams"), public_path="/streams", min_free_bytes=0)


@pytest.fixture
def profile(fake_ffmpeg):
    return HlsProfile(segment_duration=1, list_size=3, delete_threshold=1, command=fake_ffmpeg)


@pytest.fixture
def supervisor(store, profile):
    return TranscodeSupervisor(store, profile, stop_timeout=2.0)


@pytest.fixture
def resolver(fake_resolver):
    return LocatorResolver(command=fake_resolver, timeout=5.0)


def build_manager(resolver, store, supervisor, **overrides):
    options = dict(
        resolver=resolver,
        store=store,
        supervisor=supervisor,
        max_attempts=3,
        backoff_base=0.05,
        backoff_factor=2.0,
        backoff_max=0.2,
        backoff_jitter=0.0,
        start_timeout=5.0,
        healthy_period=0.2,
        gc_enabled=False,
        resume_on_startup=False,
    )
    options.update(overrides)
    return ChannelPipelineManager(**options)


@pytest.fixture
def manager_factory(resolver, store, supervisor):
    def _build(**overrides):
        options = dict(resolver=resolver, store=store, supervisor=supervisor)
        options.update(overrides)
        return build_manager(**options)
    return _build


@pytest_asyncio.fixture
async def manager(manager_factory):
    pipeline_manager = manager_factory()
    await pipeline_manager.start()
    yield pipeline_manager
    await pipeline_manager.shutdown()


@pytest.fixture
def wait_until():
    """Poll ``predicate`` until it holds; fail the test on timeout."""
    async def _wait(predicate, timeout=10.0, interval=0.02, message="condition"):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return
            await asyncio.sleep(interval)
        pytest.fail(f"Timed out waiting for {message}")
    return _wait
