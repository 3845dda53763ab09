import sys

from disk_imager.main import main


sys.exit(main())
