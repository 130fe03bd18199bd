"""Allow ``python -m gitlab_fusion``."""

import sys

from gitlab_fusion.cli import main

sys.exit(main())
