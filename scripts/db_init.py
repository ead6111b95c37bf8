#!/usr/bin/env python3
"""
Database initialization script for PinGate.

Creates all tables and optionally seeds one location. For production, use
migrations instead.
"""
import argparse
import sys

from dotenv import load_dotenv

load_dotenv()

from pingate.config import get_config  # noqa: E402
from pingate.database import get_health_status, init_all, session_scope  # noqa: E402
from pingate.models import Location  # noqa: E402


def seed_location(slug: str, name: str, lat: float, lng: float, radius_m: int) -> None:
    with session_scope() as session:
        if session.query(Location).filter(Location.slug == slug).first():
            print(f"  Location {slug} already exists")
            return
        session.add(Location(slug=slug, name=name, lat=lat, lng=lng, radius_m=radius_m))
        print(f"  Seeded location {slug} at ({lat}, {lng}) r={radius_m}m")


def main(argv=None):
    """Initialize database and create all tables."""
    parser = argparse.ArgumentParser(description="Create PinGate tables")
    parser.add_argument("--seed-slug")
    parser.add_argument("--seed-name", default="")
    parser.add_argument("--lat", type=float)
    parser.add_argument("--lng", type=float)
    parser.add_argument("--radius-m", type=int, default=100)
    args = parser.parse_args(argv)

    print("=" * 60)
    print("PinGate Database Initialization")
    print("=" * 60)

    config = get_config()
    db_url = config["DATABASE_URL"]
    print(f"\nDatabase URL: {db_url.split('@')[1] if '@' in db_url else db_url}")

    print("\nCreating database tables...")
    init_all(config, create_tables=True)
    print("All tables created successfully")

    if args.seed_slug:
        if args.lat is None or args.lng is None:
            parser.error("--lat and --lng are required with --seed-slug")
        seed_location(args.seed_slug, args.seed_name or args.seed_slug, args.lat, args.lng, args.radius_m)

    health = get_health_status()
    print("\nDatabase Health:")
    print(f"  Database: {health['database']['status']}")
    print(f"  Redis: {health['redis']['status']}")

    if health["database"]["status"] != "healthy":
        print("\nDatabase is not healthy. Check configuration.")
        return 1
    print("\nDatabase initialization complete!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
