import sys

from audiobook_uploader.cli import main

sys.exit(main())
