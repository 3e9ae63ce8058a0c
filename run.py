#!/usr/bin/env python3
"""
Town Economy Entry Point

Starts the FastAPI server (port 8090 unless TOWN_API_PORT says otherwise).
"""

import sys

from town_economy.api import run_server
from town_economy.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Town Economy...")
    print(f"Storage: {config.database_url}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\nShutting down Town Economy...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
