"""Entrypoint for the music voice service."""

from __future__ import annotations

import asyncio

import uvicorn

from services.common.structured_logging import configure_logging, get_logger

from .bot import MusicBot
from .config import MusicConfig, load_config
from .control_plane import create_app
from .pipeline import PipelineFactory
from .synchronizer import CommandSynchronizer


logger = get_logger(__name__, service_name="music")


async def run_service(config: MusicConfig) -> None:
    """Run the Discord client and the control-plane server until either stops."""
    bot = MusicBot(config.discord)
    synchronizer = CommandSynchronizer(
        bot, PipelineFactory(config.pipeline), config.session
    )
    bot.voice_state_listener = synchronizer.handle_voice_state
    app = create_app(synchronizer, config.control_plane)

    # log_config=None keeps uvicorn from replacing our logging setup
    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=config.control_plane.host,
            port=config.control_plane.port,
            log_config=None,
        )
    )

    async with bot:
        bot_task = asyncio.create_task(bot.start(config.discord.token))
        server_task = asyncio.create_task(server.serve())
        logger.info(
            "service.started",
            control_plane_port=config.control_plane.port,
            control_plane_path=config.control_plane.path,
            session=config.session.to_dict(),
            pipeline=config.pipeline.to_dict(),
        )
        try:
            done, _ = await asyncio.wait(
                {bot_task, server_task}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            await synchronizer.shutdown()
            server.should_exit = True
            for task in (bot_task, server_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(bot_task, server_task, return_exceptions=True)
        for task in done:
            exc = None if task.cancelled() else task.exception()
            if exc is not None:
                raise exc
    logger.info("service.stopped")


def main() -> None:
    """Main entrypoint for the music service."""
    config = load_config()
    configure_logging(
        config.logging.level,
        json_logs=config.logging.json_logs,
        service_name=config.logging.service_name,
    )
    asyncio.run(run_service(config))


if __name__ == "__main__":
    main()
