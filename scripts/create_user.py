"""
Create a user and print its API key (shown only once).

Usage:
    python scripts/create_user.py student@example.edu
"""
import argparse
import asyncio
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from studygate.app.db.async_session import close_async_engine, get_async_session
from studygate.app.db.crud import create_user
from studygate.app.db.init_db import init_database


async def main(email: str, api_key: str | None) -> None:
    await init_database()
    try:
        async with get_async_session() as session:
            user, raw_key = await create_user(session, email=email, api_key=api_key)
    finally:
        await close_async_engine()

    print(f"Created user {user.id} ({user.email})")
    print(f"API key: {raw_key}")
    print("Store this key now; only its hash is kept.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create a studygate user")
    parser.add_argument("email", help="Email address of the user")
    parser.add_argument("--api-key", default=None, help="Use this key instead of generating one")
    args = parser.parse_args()
    asyncio.run(main(args.email, args.api_key))
