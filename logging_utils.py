"""Console logging for the dehaze command line and server entry points."""

import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(message)s"

# Indexed by verbosity; plain runs print progress at INFO
VERBOSITY_LEVELS = (logging.ERROR, logging.WARNING, logging.INFO, logging.DEBUG)
DEFAULT_VERBOSITY = 2


def add_logging_args(parser) -> None:
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Also print debug output (backend selection, timings)",
    )
    parser.add_argument(
        "-q", "--quiet",
        action="count",
        default=0,
        help="Hide progress (-qq: errors only)",
    )


def verbosity_level(verbose: int = 0, quiet: int = 0) -> int:
    index = DEFAULT_VERBOSITY + verbose - quiet
    index = max(0, min(index, len(VERBOSITY_LEVELS) - 1))
    return VERBOSITY_LEVELS[index]


def configure_logging(verbose: int = 0, quiet: int = 0) -> int:
    """Send log records to stderr at the requested verbosity and return the level."""
    level = verbosity_level(verbose, quiet)
    root_logger = logging.getLogger()

    if root_logger.handlers:
        root_logger.setLevel(level)
    else:
        logging.basicConfig(level=level, format=LOG_FORMAT, datefmt="%H:%M:%S", stream=sys.stderr)

    return level
