import sys

from host_recovery.cli import main

sys.exit(main())
