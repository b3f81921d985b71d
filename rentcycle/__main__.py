"""Allow running rentcycle with ``python -m rentcycle``."""

import sys

from rentcycle.cli import main

sys.exit(main())
