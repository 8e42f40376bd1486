"""
Pytest configuration for test discovery and imports.

Ensures src/ is on sys.path so tests can import modules directly, and the
repository root so the HTTP service package is importable.
"""

import os
import sys

ROOT_DIR = os.path.dirname(__file__)
SRC_DIR = os.path.join(ROOT_DIR, "src")

for path in (SRC_DIR, ROOT_DIR):
    if path not in sys.path:
        sys.path.insert(0, path)
