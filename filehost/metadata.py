"""Directory metadata: store loading, layered lookup, listing resolution and writes.

A directory's metadata lives in one of several JSON layouts:

* a shard file referenced from ``metadata-index.json`` (sharded mode),
* a single ``metadata.json`` at the storage root (monolithic mode),
* ``metadata-root.json`` holding top-level folder descriptions.

Every store file is either keyed by entry name or carries an ``items`` array of
``{"name": ..., ...}`` objects. Both are folded into :class:`MetadataStore` as
soon as they are read; nothing past :func:`normalize_store` looks at the shape
except the writer.
"""

import json
import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from .storage import (
    FILES_DIR,
    METADATA_SOURCE_NAMES,
    EntryNotFoundError,
    InvalidContentError,
    InvalidPathError,
    InvalidRequestError,
    NameConflictError,
    NotDirectoryError,
    StorageError,
    StorageIOError,
    create_directory,
    delete_path,
    isoformat_utc,
    is_temporary_artifact,
    join_relative_path,
    list_physical_entries,
    resolve_storage_path,
    sanitize_log_value,
    split_relative_path,
    validate_filename,
    write_json_atomic,
    write_text_atomic,
)


logger = logging.getLogger("filehost.metadata")

METADATA_FILENAME = "metadata.json"
INDEX_FILENAME = "metadata-index.json"
ROOT_METADATA_FILENAME = "metadata-root.json"
BACKUP_SUFFIX = ".backup.json"
INDEX_VERSION = "1.0"

SHAPE_OBJECT = "object"
SHAPE_ITEMS = "items"

# Fields an admin edits through the file properties form.
MANAGED_FIELDS = (
    "description",
    "modified",
    "url",
    "password",
    "fileSize",
    "downloadSource",
)
FILE_OVERLAY_FIELDS = ("type", "downloadSource", "password", "fileSize")
URL_LINK_FIELDS = ("description", "modified", "password", "fileSize", "downloadSource")


def is_metadata_artifact(name: str) -> bool:
    """Return True for files that hold metadata rather than hosted content."""

    return (
        name in {METADATA_FILENAME, INDEX_FILENAME, ROOT_METADATA_FILENAME}
        or name.startswith("metadata-")
        or name.endswith(BACKUP_SUFFIX)
    )


def is_reserved_name(name: str) -> bool:
    return is_metadata_artifact(name) or is_temporary_artifact(name)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _root(root: Optional[Union[str, Path]]) -> Path:
    return Path(root) if root is not None else FILES_DIR


@dataclass
class MetadataStore:
    """Records of one store file, keyed by entry name."""

    path: Optional[Path]
    shape: str = SHAPE_OBJECT
    records: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    extras: Dict[str, Any] = field(default_factory=dict)
    corrupt: bool = False

    def to_document(self) -> Dict[str, Any]:
        document = dict(self.extras)
        if self.shape == SHAPE_ITEMS:
            document["items"] = [
                {"name": name, **record} for name, record in self.records.items()
            ]
        else:
            document.update(self.records)
        return document


@dataclass
class MetadataIndex:
    path: Path
    shards: Dict[str, str] = field(default_factory=dict)
    extras: Dict[str, Any] = field(default_factory=dict)
    corrupt: bool = False

    def to_document(self) -> Dict[str, Any]:
        document = dict(self.extras)
        document.setdefault("version", INDEX_VERSION)
        document["shards"] = dict(self.shards)
        return document


def normalize_store(raw: Any, path: Optional[Path] = None) -> MetadataStore:
    """Fold either store shape into a name-keyed :class:`MetadataStore`."""

    if not isinstance(raw, dict):
        logger.warning(
            "metadata_store_invalid path=%s type=%s", path, type(raw).__name__
        )
        return MetadataStore(path=path, corrupt=True)

    items = raw.get("items")
    if isinstance(items, list):
        store = MetadataStore(
            path=path,
            shape=SHAPE_ITEMS,
            extras={key: value for key, value in raw.items() if key != "items"},
        )
        for item in items:
            name = item.get("name") if isinstance(item, dict) else None
            if not isinstance(name, str) or not name:
                logger.warning("metadata_item_skipped path=%s reason=missing_name", path)
                continue
            # Later duplicates win.
            store.records[name] = {
                key: value for key, value in item.items() if key != "name"
            }
        return store

    store = MetadataStore(path=path, shape=SHAPE_OBJECT)
    for key, value in raw.items():
        if isinstance(value, dict):
            store.records[key] = dict(value)
        else:
            store.extras[key] = value
    return store


def load_store(path: Path, default_shape: str = SHAPE_OBJECT) -> MetadataStore:
    """Read a store file; unreadable or malformed files load as empty."""

    try:
        with path.open("r", encoding="utf-8") as handle:
            raw = json.load(handle)
    except FileNotFoundError:
        return MetadataStore(path=path, shape=default_shape)
    except (OSError, ValueError) as error:
        logger.warning(
            "metadata_store_unreadable path=%s error=%s",
            path,
            sanitize_log_value(str(error)),
        )
        return MetadataStore(path=path, shape=default_shape, corrupt=True)
    return normalize_store(raw, path)


def _backup_corrupt_file(path: Path) -> None:
    if not path.is_file():
        return
    backup_path = path.with_name(path.stem + BACKUP_SUFFIX)
    shutil.copyfile(path, backup_path)
    logger.warning("metadata_corrupt_backed_up path=%s backup=%s", path, backup_path)


def save_store(store: MetadataStore) -> None:
    """Rewrite the whole store file as pretty-printed JSON."""

    if store.path is None:
        raise StorageIOError("Metadata store has no backing file")
    try:
        if store.corrupt:
            _backup_corrupt_file(store.path)
        write_json_atomic(store.path, store.to_document())
    except OSError as error:
        raise StorageIOError(f"Failed to write metadata: {error}") from error
    store.corrupt = False
    logger.info(
        "metadata_store_saved path=%s shape=%s records=%d",
        store.path,
        store.shape,
        len(store.records),
    )


def load_index(root: Path) -> Optional[MetadataIndex]:
    """Load ``metadata-index.json``; ``None`` when the deployment has none."""

    path = root / INDEX_FILENAME
    if not path.is_file():
        return None

    try:
        with path.open("r", encoding="utf-8") as handle:
            raw = json.load(handle)
    except (OSError, ValueError) as error:
        logger.warning(
            "metadata_index_unreadable path=%s error=%s",
            path,
            sanitize_log_value(str(error)),
        )
        return MetadataIndex(path=path, corrupt=True)

    if not isinstance(raw, dict):
        logger.warning("metadata_index_invalid path=%s", path)
        return MetadataIndex(path=path, corrupt=True)

    index = MetadataIndex(path=path)
    if isinstance(raw.get("shards"), dict):
        mapping = raw["shards"]
        index.extras = {key: value for key, value in raw.items() if key != "shards"}
    else:
        mapping = {key: value for key, value in raw.items() if key != "version"}
        if "version" in raw:
            index.extras["version"] = raw["version"]

    for directory, shard in mapping.items():
        if isinstance(shard, str) and shard:
            index.shards[str(directory).strip("/")] = shard
    return index


def save_index(index: MetadataIndex) -> None:
    try:
        if index.corrupt:
            _backup_corrupt_file(index.path)
        write_json_atomic(index.path, index.to_document())
    except OSError as error:
        raise StorageIOError(f"Failed to write metadata index: {error}") from error
    index.corrupt = False


def default_shard_for(directory: str) -> str:
    if not directory:
        return ROOT_METADATA_FILENAME
    return f"{directory}/{METADATA_FILENAME}"


def register_shard(root: Path, directory: str, shard: str) -> None:
    """Map *directory* to *shard* in the index, creating the index if needed."""

    index = load_index(root) or MetadataIndex(path=root / INDEX_FILENAME)
    if index.shards.get(directory) == shard:
        return
    index.shards[directory] = shard
    save_index(index)
    logger.info(
        "metadata_shard_registered directory=%s shard=%s",
        sanitize_log_value(directory),
        sanitize_log_value(shard),
    )


def _shard_path(root: Path, shard: str) -> Optional[Path]:
    try:
        path, _ = resolve_storage_path(shard, root)
    except InvalidPathError:
        logger.warning("metadata_shard_outside_root shard=%s", sanitize_log_value(shard))
        return None
    return path


def load_root_folder_metadata(root: Path) -> MetadataStore:
    return load_store(root / ROOT_METADATA_FILENAME)


@dataclass
class WriteTarget:
    """The store a mutation writes to, plus how names map to its keys."""

    root: Path
    store: MetadataStore
    key_prefix: str = ""
    register: Optional[Tuple[str, str]] = None

    def key(self, name: str) -> str:
        return self.key_prefix + name

    def get(self, name: str) -> Optional[Dict[str, Any]]:
        return self.store.records.get(self.key(name))

    def visible_key(self, name: str) -> str:
        """Key a listing reads for *name*: the prefixed key, else a shared bare key."""

        key = self.key(name)
        if key not in self.store.records and name in self.store.records:
            return name
        return key

    def put(self, name: str, record: Dict[str, Any]) -> bool:
        """Store *record* under *name*, dropping it when empty. Returns True on change."""

        key = self.key(name)
        if record:
            if self.store.records.get(key) == record:
                return False
            self.store.records[key] = record
            return True
        if key in self.store.records:
            del self.store.records[key]
            return True
        return False

    def commit(self) -> None:
        save_store(self.store)
        if self.register is not None:
            register_shard(self.root, *self.register)
            self.register = None


class MetadataSource:
    """One layer of the metadata lookup chain.

    ``load`` returns the store describing a directory, or ``None`` to let the
    next source answer. ``open_for_write`` mirrors that decision for writes and
    ``bootstrap`` creates the layout when no source is active yet.
    """

    name = ""

    def load(self, root: Path, directory: str) -> Optional[MetadataStore]:
        raise NotImplementedError

    def open_for_write(self, root: Path, directory: str) -> Optional[WriteTarget]:
        raise NotImplementedError

    def bootstrap(self, root: Path, directory: str) -> WriteTarget:
        raise NotImplementedError


class IndexSource(MetadataSource):
    """Per-directory shard files referenced from ``metadata-index.json``."""

    name = "index"

    def load(self, root: Path, directory: str) -> Optional[MetadataStore]:
        index = load_index(root)
        if index is None:
            return None

        shard = index.shards.get(directory)
        if shard is None:
            return MetadataStore(path=None)

        path = _shard_path(root, shard)
        if path is None:
            return MetadataStore(path=None)
        if not path.is_file():
            logger.warning(
                "metadata_shard_missing directory=%s shard=%s",
                sanitize_log_value(directory),
                sanitize_log_value(shard),
            )
            return MetadataStore(path=path)
        return load_store(path)

    def open_for_write(self, root: Path, directory: str) -> Optional[WriteTarget]:
        index = load_index(root)
        if index is None:
            return None

        shard = index.shards.get(directory)
        if shard is None:
            return self.bootstrap(root, directory)

        path = _shard_path(root, shard)
        if path is None:
            raise InvalidPathError("Metadata shard is outside the storage root")
        return WriteTarget(root=root, store=load_store(path))

    def bootstrap(self, root: Path, directory: str) -> WriteTarget:
        shard = default_shard_for(directory)
        return WriteTarget(
            root=root,
            store=load_store(root / shard),
            register=(directory, shard),
        )


class MonolithicSource(MetadataSource):
    """A single ``metadata.json`` at the storage root shared by every directory.

    Keys are bare entry names or full relative paths; the full path wins.
    """

    name = "monolithic"

    def load(self, root: Path, directory: str) -> Optional[MetadataStore]:
        path = root / METADATA_FILENAME
        if not path.is_file():
            return None
        return scope_monolithic_store(load_store(path), directory)

    def open_for_write(self, root: Path, directory: str) -> Optional[WriteTarget]:
        if not (root / METADATA_FILENAME).is_file():
            return None
        return self.bootstrap(root, directory)

    def bootstrap(self, root: Path, directory: str) -> WriteTarget:
        return WriteTarget(
            root=root,
            store=load_store(root / METADATA_FILENAME),
            key_prefix=f"{directory}/" if directory else "",
        )


SOURCE_TYPES = {
    IndexSource.name: IndexSource,
    MonolithicSource.name: MonolithicSource,
}

SourceList = Optional[Iterable[Union[str, MetadataSource]]]


def scope_monolithic_store(store: MetadataStore, directory: str) -> MetadataStore:
    records = {name: record for name, record in store.records.items() if "/" not in name}
    if directory:
        prefix = f"{directory}/"
        for key, record in store.records.items():
            name = key[len(prefix):]
            if key.startswith(prefix) and name and "/" not in name:
                records[name] = record
    return MetadataStore(
        path=store.path, shape=store.shape, records=records, corrupt=store.corrupt
    )


def build_sources(names: SourceList = None) -> List[MetadataSource]:
    """Instantiate the lookup chain from source names, in order."""

    if names is None:
        names = METADATA_SOURCE_NAMES

    sources: List[MetadataSource] = []
    for entry in names:
        if isinstance(entry, MetadataSource):
            sources.append(entry)
            continue
        factory = SOURCE_TYPES.get(entry)
        if factory is None:
            raise ValueError(f"Unknown metadata source: {entry}")
        sources.append(factory())
    return sources


def load_directory_metadata(
    root: Path, directory: str, sources: SourceList = None
) -> MetadataStore:
    for source in build_sources(sources):
        store = source.load(root, directory)
        if store is not None:
            return store
    return MetadataStore(path=None)


def open_write_target(
    root: Path, directory: str, sources: SourceList = None
) -> WriteTarget:
    chain = build_sources(sources)
    for source in chain:
        target = source.open_for_write(root, directory)
        if target is not None:
            return target
    if not chain:
        raise InvalidRequestError("No metadata sources are configured")
    return chain[0].bootstrap(root, directory)


def sort_entries(entries: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Directories first, then files, each group ordered by name."""

    return sorted(entries, key=lambda entry: (not entry["isDirectory"], entry["name"]))


def _physical_entry(
    physical: Dict[str, Any],
    record: Optional[Dict[str, Any]],
    root_folders: Optional[MetadataStore],
) -> Dict[str, Any]:
    record = record or {}
    is_directory = physical["is_directory"]
    entry: Dict[str, Any] = {
        "name": physical["name"],
        "isDirectory": is_directory,
        "size": 0 if is_directory else physical["size"],
        "modified": None if is_directory else isoformat_utc(physical["mtime"]),
        "description": None if _is_blank(record.get("description")) else record["description"],
    }

    if is_directory:
        if entry["description"] is None and root_folders is not None:
            folder_record = root_folders.records.get(physical["name"]) or {}
            if not _is_blank(folder_record.get("description")):
                entry["description"] = folder_record["description"]
        return entry

    if not _is_blank(record.get("modified")):
        entry["modified"] = record["modified"]
    for name in FILE_OVERLAY_FIELDS:
        if not _is_blank(record.get(name)):
            entry[name] = record[name]
    return entry


def _url_link_entries(store: MetadataStore) -> List[Dict[str, Any]]:
    entries = []
    for name, record in store.records.items():
        if record.get("type") != "url" or _is_blank(record.get("url")):
            continue
        entry: Dict[str, Any] = {
            "name": name,
            "isDirectory": False,
            "size": 0,
            "modified": None,
            "description": None,
            "type": "url",
            "url": record["url"],
        }
        for field_name in URL_LINK_FIELDS:
            if not _is_blank(record.get(field_name)):
                entry[field_name] = record[field_name]
        entries.append(entry)
    return entries


def resolve_directory(
    requested_path: Optional[str],
    root: Optional[Union[str, Path]] = None,
    sources: SourceList = None,
) -> Dict[str, Any]:
    """List a directory with its metadata overlaid and URL links appended.

    Raises:
        InvalidPathError: the path escapes the storage root.
        EntryNotFoundError: nothing exists at the path.
        NotDirectoryError: the path names a file.
    """

    root_path = _root(root)
    full_path, directory = resolve_storage_path(requested_path, root_path)
    if not full_path.exists():
        raise EntryNotFoundError("Path not found")
    if not full_path.is_dir():
        raise NotDirectoryError("Not a directory")

    store = load_directory_metadata(root_path, directory, sources)
    root_folders = load_root_folder_metadata(root_path) if not directory else None

    items = [
        _physical_entry(physical, store.records.get(physical["name"]), root_folders)
        for physical in list_physical_entries(full_path)
        if not is_metadata_artifact(physical["name"])
    ]
    items.extend(_url_link_entries(store))
    return {"path": requested_path or "", "items": sort_entries(items)}


def find_url_link(
    path: Optional[str],
    root: Optional[Union[str, Path]] = None,
    sources: SourceList = None,
) -> Optional[Dict[str, Any]]:
    """Return the URL-link record addressed by *path*, if there is one."""

    root_path = _root(root)
    _, relative = resolve_storage_path(path, root_path)
    if not relative:
        return None
    parent, name = split_relative_path(relative)
    record = load_directory_metadata(root_path, parent, sources).records.get(name)
    if record and record.get("type") == "url" and not _is_blank(record.get("url")):
        return dict(record, name=name)
    return None


def _require_directory(root: Path, dir_path: Optional[str]) -> Tuple[Path, str]:
    full_path, directory = resolve_storage_path(dir_path, root)
    if not full_path.exists():
        raise EntryNotFoundError("Directory not found")
    if not full_path.is_dir():
        raise NotDirectoryError("Not a directory")
    return full_path, directory


def _require_entry_name(name: Any) -> str:
    if not isinstance(name, str):
        raise InvalidRequestError("Name is required")
    valid, message = validate_filename(name)
    if not valid:
        raise InvalidRequestError(message or "Invalid name")
    if is_reserved_name(name):
        raise InvalidRequestError("Name is reserved for metadata files")
    return name


def _apply_changes(record: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
    updated = dict(record)
    for key, value in changes.items():
        if _is_blank(value):
            updated.pop(key, None)
        else:
            updated[key] = value
    if updated.get("type") == "url" and _is_blank(updated.get("url")):
        updated.pop("type")
    return updated


def update_record(
    dir_path: Optional[str],
    name: str,
    changes: Dict[str, Any],
    root: Optional[Union[str, Path]] = None,
    sources: SourceList = None,
) -> Dict[str, Any]:
    """Set or clear the given fields of one record, leaving other fields alone."""

    root_path = _root(root)
    _, directory = _require_directory(root_path, dir_path)
    _require_entry_name(name)

    target = open_write_target(root_path, directory, sources)
    record = _apply_changes(target.get(name) or {}, changes)
    if target.put(name, record):
        target.commit()
        logger.info(
            "metadata_record_updated directory=%s name=%s fields=%s",
            sanitize_log_value(directory),
            sanitize_log_value(name),
            sorted(record.keys()),
        )
    return record


def set_file_properties(
    dir_path: Optional[str],
    file_name: str,
    fields: Optional[Dict[str, Any]],
    root: Optional[Union[str, Path]] = None,
    sources: SourceList = None,
) -> Dict[str, Any]:
    """Replace the editable fields of a file record; blank or absent fields are removed."""

    fields = fields or {}
    changes = {key: fields.get(key) for key in MANAGED_FIELDS}
    return update_record(dir_path, file_name, changes, root=root, sources=sources)


def add_url_link(
    dir_path: Optional[str],
    name: str,
    url: str,
    fields: Optional[Dict[str, Any]] = None,
    root: Optional[Union[str, Path]] = None,
    sources: SourceList = None,
) -> Dict[str, Any]:
    root_path = _root(root)
    _, directory = _require_directory(root_path, dir_path)
    _require_entry_name(name)
    if _is_blank(url):
        raise InvalidRequestError("URL is required")

    target = open_write_target(root_path, directory, sources)
    visible = load_directory_metadata(root_path, directory, sources).records
    if target.get(name) is not None or name in visible:
        raise NameConflictError(f"An entry named '{name}' already exists")

    record: Dict[str, Any] = {"type": "url", "url": url}
    for key in URL_LINK_FIELDS:
        value = (fields or {}).get(key)
        if not _is_blank(value):
            record[key] = value

    target.put(name, record)
    target.commit()
    logger.info(
        "url_link_added directory=%s name=%s",
        sanitize_log_value(directory),
        sanitize_log_value(name),
    )
    return record


def set_folder_description(
    dir_path: Optional[str],
    folder_name: str,
    description: Optional[str],
    root: Optional[Union[str, Path]] = None,
    sources: SourceList = None,
) -> Dict[str, Any]:
    root_path = _root(root)
    _, directory = _require_directory(root_path, dir_path)
    _require_entry_name(folder_name)

    if directory:
        target = open_write_target(root_path, directory, sources)
    else:
        # Top-level folder descriptions always live in the legacy object-shaped file.
        store = load_root_folder_metadata(root_path)
        store.shape = SHAPE_OBJECT
        target = WriteTarget(root=root_path, store=store)

    record = _apply_changes(target.get(folder_name) or {}, {"description": description})
    if target.put(folder_name, record):
        target.commit()
    logger.info(
        "folder_description_updated directory=%s name=%s",
        sanitize_log_value(directory),
        sanitize_log_value(folder_name),
    )
    return record


def create_folder(
    dir_path: Optional[str],
    name: str,
    root: Optional[Union[str, Path]] = None,
) -> str:
    """Create a folder with an empty items-shaped store; return its relative path."""

    root_path = _root(root)
    _require_entry_name(name)
    _, parent = resolve_storage_path(dir_path, root_path)
    full_path, relative = resolve_storage_path(join_relative_path(parent, name), root_path)

    create_directory(full_path)
    save_store(MetadataStore(path=full_path / METADATA_FILENAME, shape=SHAPE_ITEMS))
    if load_index(root_path) is not None:
        register_shard(root_path, relative, default_shard_for(relative))
    return relative


def _forget_record(root: Path, directory: str, name: str, sources: SourceList) -> None:
    target = open_write_target(root, directory, sources)
    if target.register is not None:
        return
    record = target.get(name)
    if record is None or record.get("type") == "url":
        return
    target.put(name, {})
    target.commit()


def _forget_index_entries(root: Path, relative: str) -> None:
    index = load_index(root)
    if index is None:
        return
    prefix = f"{relative}/"
    stale = [key for key in index.shards if key == relative or key.startswith(prefix)]
    if not stale:
        return
    for key in stale:
        del index.shards[key]
    save_index(index)


def delete_entry(
    path: Optional[str],
    root: Optional[Union[str, Path]] = None,
    sources: SourceList = None,
) -> str:
    """Delete a URL link record, a file, or a directory tree.

    Returns ``"url"``, ``"file"`` or ``"directory"`` for what was removed.
    """

    root_path = _root(root)
    full_path, relative = resolve_storage_path(path, root_path)
    if not relative:
        raise InvalidPathError("Cannot delete the storage root")
    parent, name = split_relative_path(relative)

    if not os.path.lexists(full_path):
        target = open_write_target(root_path, parent, sources)
        key = target.visible_key(name)
        record = target.store.records.get(key)
        if record is None or record.get("type") != "url":
            raise EntryNotFoundError("File not found")
        del target.store.records[key]
        target.commit()
        logger.info("url_link_deleted path=%s", sanitize_log_value(relative))
        return "url"

    is_directory = delete_path(full_path)
    try:
        _forget_record(root_path, parent, name, sources)
        if is_directory:
            _forget_index_entries(root_path, relative)
    except StorageError as error:
        logger.warning(
            "metadata_cleanup_failed path=%s error=%s",
            sanitize_log_value(relative),
            error.message,
        )
    return "directory" if is_directory else "file"


def save_raw_metadata(
    path: Optional[str],
    content: Any,
    root: Optional[Union[str, Path]] = None,
) -> None:
    """Overwrite a store file with admin-supplied JSON text, verbatim."""

    root_path = _root(root)
    full_path, relative = resolve_storage_path(path, root_path)
    if not relative.endswith(METADATA_FILENAME):
        raise InvalidContentError("Invalid metadata path")
    if not isinstance(content, str):
        raise InvalidContentError("Metadata content must be a JSON string")
    try:
        json.loads(content)
    except ValueError as error:
        raise InvalidContentError(f"Invalid JSON: {error}") from error
    if not full_path.parent.is_dir():
        raise EntryNotFoundError("Directory not found")

    try:
        write_text_atomic(full_path, content)
    except OSError as error:
        raise StorageIOError(f"Failed to write metadata: {error}") from error
    logger.info("metadata_raw_saved path=%s bytes=%d", sanitize_log_value(relative), len(content))
