"""
Entry point for running drillqueue as a module.

Usage:
    python -m drillqueue.delivery study --topic networking-basics
    python -m drillqueue.delivery stats
    python -m drillqueue.delivery --help
"""
from .cli import main

if __name__ == "__main__":
    main()
