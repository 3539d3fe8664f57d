#!/usr/bin/env python3
"""
Database Setup Script for Relay

Checks that every Relay table exists and is reachable with the service-role
key. Supabase's REST API cannot run DDL, so missing tables are reported with
instructions for applying supabase/migrations/001_relay_schema.sql.
"""

import argparse
import sys
from pathlib import Path

from supabase import create_client, Client

sys.path.append(str(Path(__file__).parent.parent))

from config import settings

REQUIRED_TABLES = [
    'engagements',
    'messages',
    'pending_reviews',
    'events',
    'programs',
    'event_approvals',
    'entity_links',
    'participants',
    'participant_links',
    'materialization_runs',
]

MIGRATION_FILE = settings.MIGRATIONS_DIR / '001_relay_schema.sql'


class DatabaseSetup:
    def __init__(self):
        """Initialize Supabase client with service role key"""
        if not settings.SUPABASE_URL or not settings.SUPABASE_SERVICE_ROLE_KEY:
            raise ValueError("Missing SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY in environment")

        self.supabase: Client = create_client(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY)

    def missing_tables(self) -> list:
        """Tables that cannot be queried"""
        print("\n🔍 Verifying database setup...")
        missing = []
        for table in REQUIRED_TABLES:
            try:
                self.supabase.table(table).select('id').limit(1).execute()
                print(f"✅ Table '{table}' is accessible")
            except Exception as e:
                print(f"❌ Table '{table}' is not accessible: {str(e)}")
                missing.append(table)
        return missing

    def seed_programs(self, names: list) -> None:
        """Add starter programs so the classifier has something to match against"""
        print("\n🌱 Seeding programs...")
        for name in names:
            existing = self.supabase.table('programs').select('id').ilike('name', name).limit(1).execute()
            if existing.data:
                print(f"ℹ️  Program '{name}' already exists")
                continue
            self.supabase.table('programs').insert({'name': name}).execute()
            print(f"✅ Added program: {name}")


def print_instructions():
    print("\n⚠️  Tables need to be created in the Supabase dashboard")
    print("\n📝 Instructions:")
    print("1. Go to your Supabase project dashboard")
    print("2. Navigate to the SQL Editor")
    print(f"3. Copy and paste the contents of: {MIGRATION_FILE.relative_to(settings.BASE_DIR)}")
    print("4. Click 'Run' to execute the schema")
    print("\nAfterwards, run this script again to verify the setup.")


def main():
    parser = argparse.ArgumentParser(description='Verify the Relay database schema')
    parser.add_argument('--seed-program', action='append', default=[],
                        help='Program name to create if missing (repeatable)')
    args = parser.parse_args()

    print("🚀 Relay Database Setup")
    print("=" * 50)

    if not MIGRATION_FILE.exists():
        print(f"\n❌ Migration file not found: {MIGRATION_FILE}")
        sys.exit(1)

    try:
        setup = DatabaseSetup()
        missing = setup.missing_tables()
    except Exception as e:
        print(f"\n❌ Setup failed: {str(e)}")
        sys.exit(1)

    if missing:
        print_instructions()
        sys.exit(1)

    if args.seed_program:
        setup.seed_programs(args.seed_program)

    print("\n🎉 Your Relay database is ready!")


if __name__ == '__main__':
    main()
