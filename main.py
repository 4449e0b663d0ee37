#!/usr/bin/env python3
"""
live-hls-relay - Main Entry Point
Converts live video pages into continuously refreshed HLS channels.
"""

import uvicorn
import logging
import shlex
import shutil
import sys
import os
import asyncio

# Add the src directory to Python path so local modules in `src/` can be imported
sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'src'))

# Import configs AFTER setting up the path
from redis_config import get_redis_config, should_use_redis
from config import settings, VERSION


def _check_tool(logger, name: str, command: str):
    executable = shlex.split(command)[0] if command.strip() else ""
    if executable and shutil.which(executable):
        logger.info(f"✅ {name} found: {shutil.which(executable)}")
    else:
        logger.warning(f"❌ {name} executable '{executable}' not found on PATH; conversions will fail")


def main():
    """Main function to start the live-hls-relay server."""

    # Try to use uvloop for better async performance
    try:
        import uvloop
        asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
        use_uvloop = True
    except ImportError:
        use_uvloop = False

    # Configure logging
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    logger = logging.getLogger(__name__)
    logger.info("="*60)
    logger.info(
        f"⚡️ Starting live-hls-relay v{VERSION} on {settings.HOST}:{settings.PORT}")
    logger.info("="*60)
    logger.info(f"ℹ️  Log level set to: {settings.LOG_LEVEL}")
    if use_uvloop:
        logger.info("✅ Using uvloop for optimized async I/O performance")
    else:
        logger.info(
            "✅ Using standard asyncio (install uvloop for better performance)")

    logger.info(f"✅ Segment store: {os.path.abspath(settings.STREAMS_DIR)}")
    _check_tool(logger, "Resolver", settings.RESOLVER_COMMAND)
    _check_tool(logger, "FFmpeg", settings.FFMPEG_COMMAND)

    if settings.RELOAD:
        logger.info("🔄 Auto-reload is enabled.")

    # If Redis records are enabled, perform a quick connectivity check and log result
    if should_use_redis():
        import redis.asyncio as redis_async

        redis_url = get_redis_config().get('redis_url')

        async def _check_redis():
            client = redis_async.from_url(redis_url, decode_responses=True)
            try:
                await client.ping()
                return True
            except Exception:
                return False
            finally:
                await client.aclose()

        if asyncio.run(_check_redis()):
            logger.info("✅ Redis available and reachable for channel records")
        else:
            logger.warning(
                f"❌  Redis configured but ping failed for: {redis_url}; records will be kept in memory")

    # Start the server using settings from the config object
    uvicorn.run(
        "api:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.RELOAD,
        log_level=settings.LOG_LEVEL.lower(),
        loop="uvloop" if use_uvloop and not settings.RELOAD else "asyncio"
    )


if __name__ == "__main__":
    main()
