import asyncio
import logging
import sys

from .broker import run_all
from .config import LOG_LEVEL
from .errors import ListenerBindFailure


def main():
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        asyncio.run(run_all())
    except ListenerBindFailure as e:
        logging.getLogger("coapmq").error("%s", e)
        sys.exit(1)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
