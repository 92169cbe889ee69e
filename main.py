#!/usr/bin/env python3
"""
Worker Fleet Provisioner (Compute Engine + Deployment Manager)

- provision: verify fleets, then bring up workers for a labelled workload
- verify:    check fleet credentials and templates once
- sweep:     retire stale deployments, idle workers and leaked VMs once
- serve:     run verification and cleanup on fixed periods

This script runs straight from a source checkout: it adds the local `src/`
directory to sys.path. For production use, prefer installing the project and
using the `fleet-provisioner` console script.

Examples:
  python3 main.py verify --fleets fleets.json
  python3 main.py provision linux 3 --fleets fleets.json
  python3 main.py serve --fleets fleets.json --state-file deployments.json
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
