#!/usr/bin/env python3
"""Convenience runner for the trail segment engine.

Usage:
    python run.py ingest activity.json --user-id u1
"""
import logging
import sys

from trail_segments.main import main

if __name__ == "__main__":
    if not logging.getLogger().hasHandlers():
        logging.basicConfig(level=logging.INFO, format="[%(asctime)s] %(levelname)s %(name)s: %(message)s")
    sys.exit(main())
