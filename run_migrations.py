#!/usr/bin/env python
"""Script to run catalog database migrations."""

import asyncio

from catalog_backend.migrations.runner import upgrade_to_head

if __name__ == "__main__":
    print("Running catalog database migrations...")
    applied = asyncio.run(upgrade_to_head())
    print(f"Migrations completed successfully! Applied: {', '.join(applied) or 'none'}")
