#!/usr/bin/env python3
"""
Pledge Loan Engine Entry Point

Starts the FastAPI server with host and port taken from PLEDGE_* settings.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from pledge_core.api import run_server
from pledge_core.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Pledge Loan Engine...")
    print(f"Storage backend: {config.storage_backend}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(host=config.api_host, port=config.api_port, debug=False)
    except KeyboardInterrupt:
        print("\nShutting down Pledge Loan Engine...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
