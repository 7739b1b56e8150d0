#!/usr/bin/env python
import logging
import sys

import uvloop

from asyncdl import AsyncDL
from supportlogging import LogContext
from utils import init_argparser, init_config

logger = logging.getLogger("m3u8dl")


def main(argv=None) -> int:
    args = init_argparser(argv)
    init_config(args)
    with LogContext():
        try:
            asyncDL = AsyncDL(args)
            uvloop.run(asyncDL.async_ex())
            return 0 if asyncDL.get_results_info() else 1
        except Exception as e:
            logger.exception(f"[main] {repr(e)}")
            return 1


if __name__ == "__main__":
    sys.exit(main())
