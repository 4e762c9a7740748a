"""python -m pincer"""

import sys

from pincer.interfaces.cli import main

sys.exit(main())
