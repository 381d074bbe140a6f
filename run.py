#!/usr/bin/env python3
"""
Loan Desk Entry Point

Starts the FastAPI server with the configured storage backend.
"""

import sys

import uvicorn

from loan_desk.config import get_config


if __name__ == "__main__":
    config = get_config()
    print(f"Starting Loan Desk API on http://{config.api_host}:{config.api_port}")
    print(f"Storage backend: {config.storage_type}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    
    try:
        uvicorn.run(
            "loan_desk.api:app",
            host=config.api_host,
            port=config.api_port,
            log_level=config.log_level.lower(),
        )
    except KeyboardInterrupt:
        print("\nShutting down Loan Desk...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
