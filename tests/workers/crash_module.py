"""Module used by the subprocess tests: exits with an error right away."""

import sys

sys.exit(3)
