"""Allow running as ``python -m anytlsctl``."""

import sys

from anytlsctl.cli import main

sys.exit(main())
