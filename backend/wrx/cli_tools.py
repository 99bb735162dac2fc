#!/usr/bin/env python3
"""
CLI tool for managing profiles and API keys.
Usage: python -m wrx.cli_tools generate PROFILE_ID [--name NAME] [--rate-limit LIMIT]
"""

import argparse
from typing import Optional

from sqlalchemy.orm import Session

from .database import SessionLocal, engine, Base
from .auth import TIERS, create_profile, issue_api_key, revoke_api_key
from .models import ApiKey, Profile


def add_profile(db: Session, email: str, tier: str = "free") -> Profile:
    """Create a profile and print its ID."""
    profile = create_profile(db, email, tier=tier)
    print(f"Profile created: {profile.id} ({profile.email}, {profile.tier})")
    return profile


def generate_key(db: Session, profile_id: str, name: Optional[str] = None, rate_limit: int = 1000) -> Optional[str]:
    """Generate a new API key for a profile and print it."""
    profile = db.query(Profile).filter(Profile.id == profile_id).first()
    if not profile:
        print(f"Profile {profile_id} not found.")
        return None

    key, api_key = issue_api_key(db, profile, name=name, rate_limit=rate_limit)
    print("\n" + "=" * 60)
    print("API KEY GENERATED SUCCESSFULLY")
    print("=" * 60)
    print(f"\nKey:        {key}")
    print(f"Profile:    {profile.email}")
    print(f"Name:       {api_key.name or '(unnamed)'}")
    print(f"Rate Limit: {api_key.rate_limit} requests/hour")
    print("\n" + "=" * 60)
    print("IMPORTANT: Save this key securely. It cannot be retrieved later!")
    print("=" * 60 + "\n")
    return key


def list_keys(db: Session) -> None:
    """List all API keys."""
    keys = db.query(ApiKey).all()
    if not keys:
        print("No API keys found.")
        return

    print("\nAPI Keys:")
    print("-" * 80)
    print(f"{'ID':<6} {'Name':<24} {'Profile':<38} {'Active':<8} {'Last Used'}")
    print("-" * 80)
    for key in keys:
        last_used = key.last_used_at.strftime("%Y-%m-%d %H:%M") if key.last_used_at else "Never"
        print(f"{key.id:<6} {(key.name or '(unnamed)'):<24} {key.user_id:<38} {str(key.is_active):<8} {last_used}")
    print("-" * 80)


def deactivate_key(db: Session, key_id: int) -> bool:
    """Deactivate an API key by ID."""
    success = revoke_api_key(db, key_id)
    if success:
        print(f"API key {key_id} deactivated successfully.")
    else:
        print(f"API key {key_id} not found.")
    return success


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Profile and API key management CLI")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    profile_parser = subparsers.add_parser("create-profile", help="Create a profile")
    profile_parser.add_argument("email", help="Profile email address")
    profile_parser.add_argument("--tier", "-t", choices=TIERS, default="free", help="Subscription tier")

    gen_parser = subparsers.add_parser("generate", help="Generate a new API key")
    gen_parser.add_argument("profile_id", help="ID of the profile that owns the key")
    gen_parser.add_argument("--name", "-n", help="Optional name for the key")
    gen_parser.add_argument("--rate-limit", "-r", type=int, default=1000, help="Rate limit (requests/hour)")

    subparsers.add_parser("list", help="List all API keys")

    deact_parser = subparsers.add_parser("deactivate", help="Deactivate an API key")
    deact_parser.add_argument("id", type=int, help="ID of the key to deactivate")

    return parser


def run(args: argparse.Namespace, db: Session) -> None:
    if args.command == "create-profile":
        add_profile(db, args.email, tier=args.tier)
    elif args.command == "generate":
        generate_key(db, args.profile_id, name=args.name, rate_limit=args.rate_limit)
    elif args.command == "list":
        list_keys(db)
    elif args.command == "deactivate":
        deactivate_key(db, args.id)


def main(argv: Optional[list[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return

    # Ensure tables exist
    Base.metadata.create_all(bind=engine)

    db = SessionLocal()
    try:
        run(args, db)
    finally:
        db.close()


if __name__ == "__main__":
    main()
