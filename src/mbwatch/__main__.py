# =============================================================================
# mbwatch Entry Point for `python -m mbwatch`
# =============================================================================
# This is equivalent to running the 'mbwatch' command after installation.
# =============================================================================

import sys

from mbwatch.app import main

if __name__ == "__main__":
    sys.exit(main())
