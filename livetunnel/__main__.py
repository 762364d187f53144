import sys

from livetunnel.cli import main

sys.exit(main())
