#!/usr/bin/env python3
"""
WB Fleet Admin CLI

- Restart an instance and wait for it to come back online
- Update an instance to a new server version (followed by a restart)
- Inspect status, logs and installable versions

This script supports running directly from a source checkout. It adds the
local `src/` directory to sys.path before importing. For production use,
prefer installing the project and using the `wb-fleet-admin` console script.

Examples:
  python3 main.py versions
  python3 main.py update ghana 1.6.12
  python3 main.py --verbose restart ghana
"""

import os
import sys

# Add src/ to path to import modules directly
REPO_ROOT = os.path.dirname(os.path.abspath(__file__))
SRC_PATH = os.path.join(REPO_ROOT, "src")
if SRC_PATH not in sys.path:
    sys.path.insert(0, SRC_PATH)

from cli import main

if __name__ == "__main__":
    sys.exit(main())
