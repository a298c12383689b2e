# scripts/run_tick.py
"""
Run one orchestrator tick and exit.

For hosts where ticks come from an external cron instead of the in-process
scheduler (set SCHEDULER_ENABLED=false on the API in that case):

    */5 * * * * cd /srv/storecast && python scripts/run_tick.py
"""
import asyncio
import json
import sys
from pathlib import Path

# Ensure UTF-8 capable stdout/stderr on Windows terminals
try:
    sys.stdout.reconfigure(encoding="utf-8")
    sys.stderr.reconfigure(encoding="utf-8")
except Exception:
    pass

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.core.config import LOG_LEVEL
from app.core.logging_config import setup_logging
from app.db.session import SessionLocal, test_db_connection
from app.services import build_engine


def main() -> int:
    setup_logging(app_name="storecast-tick", level=LOG_LEVEL)

    if not test_db_connection():
        print("[ERROR] Database connection failed!")
        return 1

    engine = build_engine(SessionLocal)
    result = asyncio.run(engine.orchestrator.tick())

    print(json.dumps(result.to_dict(), indent=2, default=str))
    return 1 if result.errors else 0


if __name__ == "__main__":
    sys.exit(main())
