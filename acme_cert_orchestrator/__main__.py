#!/usr/bin/env python3
"""
Entry point for running acme_cert_orchestrator as a module.
Usage: python -m acme_cert_orchestrator
"""

import sys

from acme_cert_orchestrator.cli import main

if __name__ == "__main__":
    sys.exit(main())
