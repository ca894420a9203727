"""Script to wipe the reel analysis cache."""

import argparse
import asyncio
import sys

sys.path.insert(0, ".")

from scriptflow.db.session import async_session_maker, init_db
from scriptflow.services.analysis_cache import analysis_cache


async def main(assume_yes: bool):
    """Delete every cached reel analysis."""
    if not assume_yes:
        answer = input("Delete ALL cached reel analyses? [y/N] ")
        if answer.strip().lower() != "y":
            print("Aborted.")
            return

    await init_db()

    async with async_session_maker() as db:
        deleted = await analysis_cache.reset(db)
        await db.commit()

    print(f"Analysis cache reset: {deleted} entries removed.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("-y", "--yes", action="store_true", help="skip the confirmation prompt")
    args = parser.parse_args()
    asyncio.run(main(args.yes))
