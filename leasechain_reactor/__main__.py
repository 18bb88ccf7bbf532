"""
Entry point for running the reactor as a module.

Usage:
    python -m leasechain_reactor
"""

from leasechain_reactor.cli import main

if __name__ == "__main__":
    main()
