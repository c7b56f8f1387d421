"""Entry point for File Dispatcher.

Usage:
    python -m file_dispatcher [-c CONFIG] [-m MODE]

    -c CONFIG   Path to the JSON config (default: Dispatcher.json next to
                the executable)
    -m MODE     install | uninstall | run (empty is the same as run)
"""

import sys

from file_dispatcher.service import main

if __name__ == "__main__":
    sys.exit(main())
