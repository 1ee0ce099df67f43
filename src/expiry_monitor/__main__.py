import sys

from expiry_monitor.cli import main

sys.exit(main())
