"""Allow running the cache CLI with ``python -m shmcache``."""

import sys

from shmcache.cli import main

if __name__ == "__main__":
    sys.exit(main())
