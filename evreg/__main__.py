"""Allow `python -m evreg`."""

import sys

from evreg.cli import main

sys.exit(main())
