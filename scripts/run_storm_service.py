"""
Storm Service Launcher

Starts the storm control plane from the storm/ package.

This service provides:
- Storm account lifecycle (create, destroy, update, bulk bandrate update)
- Transfer job initiation and the storm server completion callback
- Registry reconciliation in a background thread

Usage:
    python scripts/run_storm_service.py --host 0.0.0.0 --port 8010

Environment Variables:
    STORM_API_PORT: API port (default: 8010)
    STORM_BIND_HOST: Bind address (default: 0.0.0.0)
    STORM_DATABASE_URL: SQLAlchemy URL (default: sqlite:///./storm/data/storm.db)
    STORM_PRIMARY_ROOT: Primary tier root (default: ./primary_storage)
"""
import argparse
import os
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import uvicorn


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the storm control-plane service")
    parser.add_argument("--host", default=os.getenv("STORM_BIND_HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=int(os.getenv("STORM_API_PORT", "8010")))
    args = parser.parse_args()

    print("=" * 60)
    print("Storm Control Plane")
    print("=" * 60)
    print(f"API Address: {args.host}:{args.port}")
    print(f"Database: {os.getenv('STORM_DATABASE_URL', 'sqlite:///./storm/data/storm.db')}")
    print(f"Primary root: {os.getenv('STORM_PRIMARY_ROOT', './primary_storage')}")
    print("=" * 60)

    # Startup validation reads these
    os.environ["STORM_API_PORT"] = str(args.port)
    os.environ["STORM_BIND_HOST"] = args.host

    uvicorn.run("storm.service:app", host=args.host, port=args.port, reload=False)


if __name__ == "__main__":
    main()
