#!/usr/bin/env python3
"""
Lending Ledger Entry Point

Starts the FastAPI server on the configured host and port (LEDGER_API_PORT,
5000 by default).
"""

import sys

from lending_ledger.api import run_server
from lending_ledger.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Lending Ledger...")
    print(f"Storage backend: {config.storage_backend}")
    print(f"API available at: http://localhost:{config.api_port}{config.api_prefix}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(debug="--reload" in sys.argv)
    except KeyboardInterrupt:
        print("\nShutting down Lending Ledger...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
