#!/usr/bin/env python3
"""
Entry point for running the bridge as a module.

Usage:
    python -m mixbridge [options]
"""

from mixbridge.bridge import main

main()
