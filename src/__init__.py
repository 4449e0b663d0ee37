"""
Live HLS Relay
Turns live video pages into continuously refreshed HLS playlists, one
supervised FFmpeg pipeline per channel.
"""

__version__ = "0.1.0"
__description__ = "Live video page to HLS channel relay"
