# roundup/__main__.py

import asyncio
import signal

from roundup.config import get_configuration, logger
from roundup.state import Application, post_init, post_shutdown, start_loops


async def run(application: Application) -> None:
    await post_init(application)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, application.stop_event.set)
        except NotImplementedError:
            # Signal handlers are unavailable on Windows event loops.
            pass

    tasks = start_loops(application)
    try:
        await asyncio.gather(*tasks)
    finally:
        await post_shutdown(application)


def main() -> None:
    """
    Main function to initialize and run the reconciliation engine.
    """
    logger.info("Starting roundup...")

    # Load configuration from config.ini.
    database_url, client_config, plex_config, schedule_config, search_config = (
        get_configuration()
    )

    application = Application(
        database_url=database_url,
        client_config=client_config,
        plex_config=plex_config,
        schedule_config=schedule_config,
        search_config=search_config,
    )

    try:
        asyncio.run(run(application))
    except KeyboardInterrupt:
        logger.info("Interrupted; exiting.")


if __name__ == "__main__":
    main()
