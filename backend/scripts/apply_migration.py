"""Apply one migration file, or every file under migrations/ in name order."""

import asyncio
import os
import sys
from pathlib import Path

BACKEND_DIR = Path(__file__).resolve().parent.parent
if str(BACKEND_DIR) not in sys.path:
    sys.path.append(str(BACKEND_DIR))

from crowdcheck.infra.postgres import close_pool, init_pool  # noqa: E402

MIGRATIONS_DIR = BACKEND_DIR / "migrations"


async def apply_migrations(filenames: list[str]) -> int:
    paths = [MIGRATIONS_DIR / name for name in filenames] or sorted(MIGRATIONS_DIR.glob("*.sql"))
    missing = [path for path in paths if not path.exists()]
    if missing:
        for path in missing:
            print(f"Migration file not found: {path}")
        return 1

    pool = await init_pool()
    try:
        for path in paths:
            print(f"Applying migration: {path.name}")
            sql = path.read_text(encoding="utf-8")
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(sql)
        print("Migrations applied successfully.")
    finally:
        await close_pool()
    return 0


if __name__ == "__main__":
    if sys.platform == "win32":
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())
    os.chdir(BACKEND_DIR)
    sys.exit(asyncio.run(apply_migrations(sys.argv[1:])))
