#!/usr/bin/env python3
"""
Banking Sync Authority Entry Point

Starts the FastAPI server serving the OTP and record sync endpoints.
"""

import sys

from banking_sync.api import run_server
from banking_sync.config import get_config
from banking_sync.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    setup_logging(level=config.log_level, log_format=config.log_format, log_file=config.log_file)

    print("🔐 Starting Banking Sync Authority...")
    print(f"📨 OTP notifier: {config.notifier_provider}")
    print(f"💾 Snapshot storage: {config.storage_url} (flush every {config.flush_interval_seconds:g}s)")
    print(f"🌐 API available at: http://localhost:{config.api_port}")
    print(f"📚 Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(host=config.api_host, port=config.api_port, debug=False)
    except KeyboardInterrupt:
        print("\n👋 Shutting down Banking Sync Authority...")
    except Exception as e:
        print(f"❌ Error starting server: {e}")
        sys.exit(1)
