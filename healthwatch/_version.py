import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)


def get_version() -> str:
    if "__file__" in globals():
        root = Path(__file__).absolute().parent
        try:
            return (root / "version.txt").read_text().strip()
        except OSError:
            logger.debug("Could not find version.txt file", exc_info=True)

    env_version = os.environ.get("HEALTHWATCH_VERSION")
    if env_version is not None:
        return env_version

    # never fail a health evaluation because of packaging metadata
    return "unknown"


__version__ = get_version()
