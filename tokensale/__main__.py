import sys

from tokensale.cli import main

sys.exit(main())
