import sys

from imap_backup.cli import main

sys.exit(main())
