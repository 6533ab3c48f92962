"""Test configuration for shared module tests."""

import os
import sys
from pathlib import Path

SHARED_DIR = Path(__file__).resolve().parents[1]
ROOT_DIR = SHARED_DIR.parent

# The services directory holds the ``shared`` package.
services_path = str(ROOT_DIR)
if services_path not in sys.path:
    sys.path.insert(0, services_path)

# Never talk to a real Redis from these tests.
os.environ["REDIS_URL"] = ""
