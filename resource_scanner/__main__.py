import sys

from resource_scanner.main import main

sys.exit(main())
