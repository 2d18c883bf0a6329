import sys

from autochat.cli import main

sys.exit(main())
