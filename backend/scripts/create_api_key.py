#!/usr/bin/env python3
"""
Script to create API keys.
Usage: python scripts/create_api_key.py --email dev@example.com --name "laptop"
"""
import argparse
import asyncio
import sys
from datetime import datetime
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select

from atlas.core.config import settings
from atlas.core.database import async_session_maker
from atlas.core.security import generate_api_key
from atlas.models.api_key import ApiKey
from atlas.models.user import User


async def create_api_key(email: str, name: str, expires_at: str = None, plan: str = "free") -> tuple[str, str]:
    """
    Create a new API key for a user, creating the user if needed.

    Args:
        email: Email of the owning user
        name: Name for the API key
        expires_at: Optional expiration date (ISO format)
        plan: Plan for a newly created user

    Returns:
        Tuple of (key_id, plaintext_key)
    """
    plaintext_key, prefix, key_hash = generate_api_key(settings.API_KEY_SALT)

    async with async_session_maker() as session:
        result = await session.execute(select(User).where(User.email == email))
        user = result.scalar_one_or_none()
        if user is None:
            user = User(email=email, name=email.split("@")[0], plan=plan)
            session.add(user)
            await session.flush()

        api_key = ApiKey(
            user_id=user.id,
            name=name,
            key_hash=key_hash,
            prefix=prefix,
            is_active=True,
        )
        if expires_at:
            api_key.expires_at = datetime.fromisoformat(expires_at)

        session.add(api_key)
        await session.commit()
        await session.refresh(api_key)

        return str(api_key.id), plaintext_key


async def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Create API key")
    parser.add_argument("--email", required=True, help="Email of the user owning the key")
    parser.add_argument("--name", required=True, help="Name for the API key")
    parser.add_argument("--expires", help="Expiration date (ISO format)")
    parser.add_argument("--plan", default="free", choices=["free", "pro", "enterprise"], help="Plan for a new user")

    args = parser.parse_args()

    try:
        key_id, plaintext_key = await create_api_key(args.email, args.name, args.expires, args.plan)

        print("\n" + "=" * 80)
        print("API Key Created Successfully!")
        print("=" * 80)
        print(f"User:       {args.email}")
        print(f"Name:       {args.name}")
        print(f"ID:         {key_id}")
        print(f"Key:        {plaintext_key}")
        print("\nIMPORTANT: Save this key now! It will not be shown again.")
        print("=" * 80 + "\n")

    except Exception as e:
        print(f"\nError creating API key: {e}\n", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
