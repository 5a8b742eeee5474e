"""Process entry point (`syncabull` console script and `python -m syncabull`).

Configuration comes from the environment only (see syncabull.config), there are no CLI flags.
"""

import asyncio
import logging
import sys

from syncabull.domain.exceptions import ConfigurationError
from syncabull.infrastructure.lifecycle import run

logger = logging.getLogger(__name__)


def main() -> int:
    """Run the sync engine until SIGINT/SIGTERM.

    Returns:
        Process exit code: 0 on clean shutdown, 2 on configuration errors
    """
    try:
        asyncio.run(run())
    except ConfigurationError as e:
        print(f"Configuration error: {e.message}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        # second Ctrl+C during shutdown on platforms without signal handlers
        logger.info("Interrupted")
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
