#!/usr/bin/env python3
"""
Entry point for running the metronome as a module.

Usage:
    python -m tictac [--tempo 120] [--beats 4] ...
"""

from tictac.cli import main

main()
