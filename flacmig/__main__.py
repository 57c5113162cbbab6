#!/usr/bin/env python3
"""Allows ``python -m flacmig``."""
import sys

from flacmig.cli import main

if __name__ == "__main__":
    sys.exit(main())
