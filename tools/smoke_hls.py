import argparse
import asyncio
import os
import sys
import tempfile
import time

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from models import PipelineState
from pipeline_manager import ChannelPipelineManager
from segment_store import SegmentStore


async def main(source_reference, channel, wait):
    print('Starting smoke HLS test against', source_reference)
    store_dir = tempfile.mkdtemp(prefix='live_hls_smoke_')
    manager = ChannelPipelineManager(store=SegmentStore(base_dir=store_dir), gc_enabled=False,
                                     resume_on_startup=False)
    await manager.start()

    try:
        result = manager.request_conversion(channel, source_reference)
        if not result.accepted:
            print('Rejected:', result.reason)
            return 2
        print('Playlist will be served at', result.playlist_url)

        deadline = time.monotonic() + wait
        status = manager.status(result.channel)
        while time.monotonic() < deadline:
            status = manager.status(result.channel)
            print('State:', status.state.value, 'failures:', status.consecutive_failures)
            if status.state in (PipelineState.STREAMING, PipelineState.FAILED):
                break
            await asyncio.sleep(1)

        if status.state != PipelineState.STREAMING:
            print('Channel did not reach streaming:', status.last_error)
            return 3

        # Let a few segments rotate
        await asyncio.sleep(wait / 2)
        window = manager.store.read_window(result.channel)
        print('Media sequence:', window.media_sequence if window else None)
        print('Playlist segments:', window.filenames if window else [])
        print('Files on disk:', manager.store.stored_segments(result.channel))
        print('Dangling references:', manager.store.dangling_references(result.channel))
        return 0

    finally:
        await manager.remove(channel)
        await manager.shutdown()
        print('Store removed:', not os.path.exists(os.path.join(store_dir, channel)))


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='Run one channel against real yt-dlp and ffmpeg')
    parser.add_argument('url', help='Live video page URL')
    parser.add_argument('--channel', default='smoketest')
    parser.add_argument('--wait', type=float, default=60.0)
    args = parser.parse_args()

    rc = asyncio.run(main(args.url, args.channel, args.wait))
    print('Exit code', rc)
    sys.exit(rc)
