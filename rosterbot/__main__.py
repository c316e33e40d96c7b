#!/usr/bin/env python3
"""
Main entry point for the roster bot when run as a module.
Usage: python -m rosterbot
"""

if __name__ == "__main__":
    from .bot import main

    main()
