import sys

from powerwall_exporter.exporter import main

sys.exit(main())
