import asyncio

from .server import MorandiServer
from .utils.logger import logger


async def main() -> None:
    server = MorandiServer()
    await server.start()
    try:
        await asyncio.Event().wait()
    finally:
        await server.stop()


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Shutting down.")


if __name__ == "__main__":
    run()
