"""Entry-point module, in case you use `python -m ubmsc`."""

import sys

from ubmsc.cli import main

if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
