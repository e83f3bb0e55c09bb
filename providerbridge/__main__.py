import sys

from providerbridge.cli import main

sys.exit(main())
