#!/usr/bin/env python3
"""
run.py — Launch aegis-dock without installing.

Usage (from the aegis-dock directory):
    python run.py start
    python run.py start --simulate
    python run.py init-config
    python run.py check --password mypassword
    python run.py list-rules
"""
import sys
from pathlib import Path

# Ensure the project root is on the path
sys.path.insert(0, str(Path(__file__).parent))

from aegis_dock.main import app

if __name__ == "__main__":
    app()
