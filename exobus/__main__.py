import sys

from exobus.cli import main

sys.exit(main())
