#!/usr/bin/env python3
"""
Standalone script to perform a "factory reset" of outfit-archive.

WARNING: This is a destructive operation. It permanently deletes every item,
tag, category and the recent-tags list from the archive's storage (the object
store, or the blob store it falls back to). This action cannot be undone.

Stop the server first so it does not keep serving its in-memory copy.
"""

import asyncio

from outfit_archive.config import Settings
from outfit_archive.errors import ArchiveError
from outfit_archive.storage import StoragePort, open_storage


async def wipe_storage(settings: Settings) -> StoragePort:
    storage = await open_storage(settings.database_url, settings.blob_path)
    try:
        await storage.clear_all()
    finally:
        await storage.close()
    return storage


def factory_reset() -> None:
    """
    Guides the user through wiping all archive data.
    """
    settings = Settings.from_env()

    print("--- outfit-archive Factory Reset ---")
    print("\n" + "="*50)
    print("!! WARNING: DESTRUCTIVE OPERATION !!")
    print("="*50)
    print("This script will permanently delete all user data, including:")
    print(f"  - The database   ({settings.database_url})")
    print(f"  - The blob store ({settings.blob_path}), if the database is unavailable")
    print("\nThis action CANNOT be undone.")
    print("Please ensure the application server is stopped before proceeding.")

    try:
        confirm = input("\n> To confirm, please type 'reset my archive': ")
        if confirm.lower() != 'reset my archive':
            print("\nConfirmation failed. Reset has been cancelled.")
            return
    except (KeyboardInterrupt, EOFError):
        print("\n\nReset cancelled by user.")
        return

    print("\n--- Starting Reset Process ---")
    try:
        storage = asyncio.run(wipe_storage(settings))
    except ArchiveError as e:
        print(f"  - [ERROR] Could not clear storage. Reason: {e.message}")
        print("\n[FAILED] The reset process did not complete.")
        return

    print(f"  - [SUCCESS] Cleared the {storage.name}.")
    print("\n[SUCCESS] The archive has been reset to a clean state.")
    print("You may now start the server. Default tags are seeded on first run.")


if __name__ == "__main__":
    factory_reset()
