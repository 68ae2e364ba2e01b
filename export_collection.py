#!/usr/bin/env python3
"""
Standalone command-line script to export all data from an outfit-archive instance.

This script opens the archive's storage directly (the object store, or the
blob store it falls back to) and writes a single JSON bundle containing every
item, the tag vocabulary and the structured category schema. The bundle can be
loaded again through the /api/import endpoint.
"""

import argparse
import asyncio
import os
from datetime import datetime

from tqdm import tqdm

from outfit_archive.config import Settings
from outfit_archive.errors import ArchiveError
from outfit_archive.models import ExportBundle
from outfit_archive.storage import open_storage
from outfit_archive.transfer import dump_bundle, export_bundle

DEFAULT_EXPORT_FILENAME = f"outfit-archive-{datetime.now().strftime('%Y-%m-%d')}.json"


async def fetch_bundle(settings: Settings) -> ExportBundle:
    """Reads the whole catalog from storage."""
    print("Reading catalog from storage...")
    storage = await open_storage(settings.database_url, settings.blob_path)
    try:
        bundle = await export_bundle(storage)
    finally:
        await storage.close()
    print(f"Found {len(bundle.images)} items, {len(bundle.tags)} tags and {len(bundle.categories)} categories.")
    return bundle


def write_bundle(bundle: ExportBundle, output_path: str) -> bool:
    """Writes the bundle to `output_path`, counting the items as they are checked."""
    print(f"Writing export to '{output_path}'...")

    missing_images = 0
    for item in tqdm(bundle.images, desc="Checking items"):
        if not item.original:
            missing_images += 1
            tqdm.write(f"Warning: Item {item.id} has no original image, exporting metadata only.")

    try:
        with open(output_path, "w", encoding="utf-8") as f:
            f.write(dump_bundle(bundle))
    except OSError as e:
        print(f"\nError: Could not write to file '{output_path}'. Reason: {e}")
        return False

    if missing_images:
        print(f"{missing_images} item(s) were exported without an original image.")
    return True


def main() -> None:
    """Main function to orchestrate the export process."""
    print("--- outfit-archive Exporter ---")
    parser = argparse.ArgumentParser(
        description="Creates a JSON bundle of all items, tags and categories of the archive.",
        formatter_class=argparse.RawTextHelpFormatter
    )
    parser.add_argument(
        "-o", "--output",
        default=DEFAULT_EXPORT_FILENAME,
        help=f"Path for the output JSON file.\n(default: {DEFAULT_EXPORT_FILENAME})"
    )
    args = parser.parse_args()

    try:
        bundle = asyncio.run(fetch_bundle(Settings.from_env()))
    except ArchiveError as e:
        print(f"A storage error occurred: {e.message}")
        return

    if not bundle.images and not bundle.tags:
        print("The archive is empty. Nothing to export.")
        return

    if write_bundle(bundle, args.output):
        print("\n-----------------------------")
        print(" Export completed successfully!")
        print(f" Your archive is saved to: {os.path.abspath(args.output)}")
        print("-----------------------------")


if __name__ == "__main__":
    main()
