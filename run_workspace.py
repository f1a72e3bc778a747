#!/usr/bin/env python3
"""
Run AI Collaboration Hub

Starts the hub from a source checkout. With no arguments it runs
``start`` with the default configuration; any arguments are passed to
the ``ai-collab-hub`` command line unchanged.
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))

from ai_collab_hub.main import main

if __name__ == "__main__":
    if len(sys.argv) == 1:
        sys.argv.append("start")
    main()
