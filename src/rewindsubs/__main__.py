import sys

from rewindsubs.main import main

sys.exit(main())
