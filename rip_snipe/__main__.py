"""python -m rip_snipe"""

import sys

from rip_snipe.cli import main

sys.exit(main())
