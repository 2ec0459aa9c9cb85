import sys

from loopsmith.main import main

sys.exit(main())
