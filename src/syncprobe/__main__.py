import sys

from syncprobe.cli import main

sys.exit(main())
