"""
Main entry point for the deployment pipeline.
Allows running the module with: python -m bookstore_deploy
"""

import sys

from .cli import main

if __name__ == '__main__':
    sys.exit(main())
