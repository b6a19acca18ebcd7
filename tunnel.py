#!/usr/bin/env python3
"""Run the TLS tunnel from a source checkout: python tunnel.py -t host:port"""

from tlstunnel.main import main

if __name__ == "__main__":
    raise SystemExit(main())
