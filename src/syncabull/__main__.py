"""Allow `python -m syncabull`."""

import sys

from syncabull.main import main

sys.exit(main())
