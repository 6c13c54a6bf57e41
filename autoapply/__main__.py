import sys

from autoapply.cli import main

sys.exit(main())
