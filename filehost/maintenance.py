"""Command line tooling for the on-disk metadata layout.

Run as ``filehost-metadata <command>``::

    shard         split the monolithic metadata.json into per-directory shards
    update-index  register every directory that carries a metadata.json
    scaffold      add placeholder records for files that have none yet
    validate      check every store referenced by the index
"""

import argparse
import json
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .metadata import (
    INDEX_FILENAME,
    METADATA_FILENAME,
    MetadataIndex,
    default_shard_for,
    is_metadata_artifact,
    load_index,
    load_store,
    open_write_target,
    save_index,
    save_store,
)
from .storage import (
    FILES_DIR,
    StorageError,
    isoformat_utc,
    list_physical_entries,
    resolve_storage_path,
    split_relative_path,
)


logger = logging.getLogger("filehost.maintenance")


@dataclass
class ValidationIssue:
    store: str
    message: str


def shard_monolithic_store(root: Path, dry_run: bool = False) -> Dict[str, int]:
    """Split ``<root>/metadata.json`` by parent directory.

    Records keyed by a full relative path land in their parent directory's
    shard; bare keys land in the root shard. Existing shard records are kept
    unless the monolithic store has a record of the same name. Returns the
    number of records written per directory.
    """

    monolithic_path = root / METADATA_FILENAME
    if not monolithic_path.is_file():
        raise FileNotFoundError(f"{monolithic_path} not found")

    monolithic = load_store(monolithic_path)
    grouped: Dict[str, Dict[str, Dict[str, Any]]] = {"": {}}
    for key, record in monolithic.records.items():
        directory, name = split_relative_path(key.strip("/"))
        grouped.setdefault(directory, {})[name] = record

    index = load_index(root) or MetadataIndex(path=root / INDEX_FILENAME)
    counts: Dict[str, int] = {}
    for directory, records in grouped.items():
        shard = default_shard_for(directory)
        try:
            shard_path, _ = resolve_storage_path(shard, root)
        except StorageError:
            logger.warning("shard_skipped directory=%s reason=outside_root", directory)
            continue

        counts[directory] = len(records)
        index.shards[directory] = shard
        if dry_run:
            continue

        shard_path.parent.mkdir(parents=True, exist_ok=True)
        store = load_store(shard_path)
        store.records.update(records)
        save_store(store)
        logger.info("shard_written directory=%s shard=%s records=%d", directory, shard, len(records))

    if not dry_run:
        save_index(index)
    return counts


def update_index(root: Path, prune: bool = False) -> Dict[str, List[str]]:
    """Register directories that carry a ``metadata.json`` and ensure the root entry.

    With *prune*, mappings whose directory no longer exists are dropped.
    """

    index = load_index(root) or MetadataIndex(path=root / INDEX_FILENAME)
    added: List[str] = []
    removed: List[str] = []

    if "" not in index.shards:
        index.shards[""] = default_shard_for("")
        added.append("")

    for current, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(name for name in dirnames if not is_metadata_artifact(name))
        relative = Path(current).relative_to(root).as_posix()
        if relative == ".":
            continue
        if METADATA_FILENAME in filenames and relative not in index.shards:
            index.shards[relative] = default_shard_for(relative)
            added.append(relative)

    if prune:
        for directory in list(index.shards):
            if directory and not (root / directory).is_dir():
                del index.shards[directory]
                removed.append(directory)

    index.shards = dict(
        sorted(index.shards.items(), key=lambda item: (item[0] != "", item[0]))
    )
    save_index(index)
    return {"added": added, "removed": removed}


def scaffold_directory(
    root: Path, directory: Optional[str], sources: Optional[Sequence[str]] = None
) -> List[str]:
    """Add placeholder records for every entry of *directory* that has none.

    Files get their mtime as ``modified`` and an empty description; folders an
    empty description. Existing records are left untouched.
    """

    full_path, relative = resolve_storage_path(directory, root)
    if not full_path.is_dir():
        raise NotADirectoryError(f"Not a directory: {full_path}")

    target = open_write_target(root, relative, sources)
    physical = sorted(
        list_physical_entries(full_path),
        key=lambda entry: (not entry["is_directory"], entry["name"]),
    )

    added: List[str] = []
    for entry in physical:
        name = entry["name"]
        if is_metadata_artifact(name) or target.get(name) is not None:
            continue
        record = {"description": ""}
        if not entry["is_directory"]:
            record = {"modified": isoformat_utc(entry["mtime"]), "description": ""}
        target.put(name, record)
        added.append(name)

    if added:
        target.commit()
    return added


def _describe(root: Path, path: Path) -> str:
    try:
        return path.relative_to(root).as_posix()
    except ValueError:
        return str(path)


def _validate_document(label: str, document: Any) -> List[ValidationIssue]:
    if not isinstance(document, dict):
        return [ValidationIssue(label, "store is not a JSON object")]

    issues: List[ValidationIssue] = []
    items = document.get("items")
    if isinstance(items, list):
        for position, item in enumerate(items):
            if not isinstance(item, dict) or not item.get("name"):
                issues.append(ValidationIssue(label, f"item {position} is missing 'name'"))
                continue
            if item.get("type") == "url" and not item.get("url"):
                issues.append(ValidationIssue(label, f"URL item '{item['name']}' is missing 'url'"))
        return issues

    for name, record in document.items():
        if isinstance(record, dict) and record.get("type") == "url" and not record.get("url"):
            issues.append(ValidationIssue(label, f"URL item '{name}' is missing 'url'"))
    return issues


def validate_stores(root: Path) -> List[ValidationIssue]:
    """Check each store the index references, or the monolithic store without one."""

    index = load_index(root)
    if index is None:
        monolithic_path = root / METADATA_FILENAME
        return validate_paths(root, [monolithic_path]) if monolithic_path.exists() else []
    if index.corrupt:
        return [ValidationIssue(INDEX_FILENAME, "index is unreadable")]

    issues: List[ValidationIssue] = []
    paths: List[Path] = []
    for shard in index.shards.values():
        try:
            path, _ = resolve_storage_path(shard, root)
        except StorageError:
            issues.append(ValidationIssue(shard, "shard path is outside the storage root"))
            continue
        paths.append(path)
    return issues + validate_paths(root, paths)


def validate_paths(root: Path, paths: Sequence[Path]) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []
    for path in paths:
        label = _describe(root, path)
        try:
            with path.open("r", encoding="utf-8") as handle:
                document = json.load(handle)
        except FileNotFoundError:
            issues.append(ValidationIssue(label, "file not found"))
            continue
        except (OSError, ValueError) as error:
            issues.append(ValidationIssue(label, f"unreadable: {error}"))
            continue
        issues.extend(_validate_document(label, document))
    return issues


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="filehost-metadata",
        description="Maintain filehost metadata stores",
    )
    parser.add_argument(
        "--root",
        type=Path,
        default=None,
        help="Storage root (defaults to FILEHOST_FILES_DIR)",
    )
    subparsers = parser.add_subparsers(dest="command")

    shard_parser = subparsers.add_parser("shard", help="Split metadata.json into shards")
    shard_parser.add_argument("--dry-run", action="store_true", help="Report without writing")

    index_parser = subparsers.add_parser("update-index", help="Register directories in the index")
    index_parser.add_argument("--prune", action="store_true", help="Drop entries for missing directories")

    scaffold_parser = subparsers.add_parser("scaffold", help="Add placeholder records")
    scaffold_parser.add_argument("directory", nargs="?", default="", help="Directory relative to the root")

    subparsers.add_parser("validate", help="Validate every metadata store")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    parser = _build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    root = (args.root or FILES_DIR).resolve()
    if not root.is_dir():
        print(f"Error: storage root not found: {root}", file=sys.stderr)
        return 1

    try:
        if args.command == "shard":
            counts = shard_monolithic_store(root, dry_run=args.dry_run)
            for directory, count in sorted(counts.items()):
                print(f"{default_shard_for(directory)}: {count} records")
            print(f"Total shards: {len(counts)}")
        elif args.command == "update-index":
            changes = update_index(root, prune=args.prune)
            for directory in changes["added"]:
                print(f"Added: {directory or '(root)'}")
            for directory in changes["removed"]:
                print(f"Removed: {directory}")
        elif args.command == "scaffold":
            added = scaffold_directory(root, args.directory)
            print(f"Added {len(added)} entries")
        elif args.command == "validate":
            issues = validate_stores(root)
            for issue in issues:
                print(f"{issue.store}: {issue.message}", file=sys.stderr)
            if issues:
                return 1
            print("All metadata files are valid")
    except (StorageError, OSError) as error:
        print(f"Error: {error}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
