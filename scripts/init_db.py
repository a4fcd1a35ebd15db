#!/usr/bin/env python3
"""Create all tables (queue, snapshots, listings, demand, circuit breaker state)."""

import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from keyword_snapshots.db import DATABASE_URL, create_db_and_tables  # noqa: E402


if __name__ == "__main__":
    create_db_and_tables()
    print(f"Tables created on {DATABASE_URL.split('@')[-1]}")
