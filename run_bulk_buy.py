#!/usr/bin/env python
"""
Run script for the multi-wallet bulk buy.

This script sets up the logging directory and runs the pipeline once.
"""

import asyncio
import sys
from pathlib import Path

# Create logs directory if it doesn't exist
logs_dir = Path("logs")
logs_dir.mkdir(exist_ok=True)

from bulkbuy.main import main

if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
