import sys

from liquidation_bot.cli import main

sys.exit(main())
