"""CLI entry point for atelier.cli module.

Enables execution via: python -m atelier.cli (runs one reconciliation sweep)
"""

from atelier.cli.reconcile import main

if __name__ == "__main__":
    main()
