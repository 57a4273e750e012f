"""
Root conftest.py - Put the amai_code package on sys.path before collection.

Lets the suite run from a plain checkout without `pip install -e .`.
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))
