"""
Entry point for running teamvault as a module.

Usage:
    python -m teamvault [command] [options]

This allows teamvault to be executed directly as a Python module,
which is useful for development and testing without installing
the package.
"""

from teamvault.cli import main

if __name__ == "__main__":
    main()
