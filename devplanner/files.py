"""
Project file attachments.

    <workspace>/<project>/_files.json     manifest: {"files": [entry, ...]}
    <workspace>/<project>/_files/<name>   the stored bytes

A file belongs to the project; cards reference it by filename through the
entry's cardSlugs list. Manifest writes happen under the per-project lock.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path, PurePath
from typing import Any, Dict, List, Optional, Union

from .constants import FILES_DIR, FILES_MANIFEST, PROJECT_FILE
from .errors import AttachmentNotFoundError, ProjectNotFoundError, ValidationError
from .locks import KeyedLock
from .schema import utc_now
from .store import check_name, read_json, write_json

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"

MIME_TYPES = {
    ".pdf": "application/pdf",
    ".md": "text/markdown",
    ".txt": "text/plain",
    ".json": "application/json",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".svg": "image/svg+xml",
    ".html": "text/html",
    ".css": "text/css",
    ".js": "application/javascript",
    ".ts": "application/typescript",
    ".yaml": "application/yaml",
    ".yml": "application/yaml",
    ".xml": "application/xml",
    ".csv": "text/csv",
}

_TEXT_APPLICATION_TYPES = (
    "application/json",
    "application/javascript",
    "application/typescript",
    "application/xml",
    "application/yaml",
)


def mime_type_for(filename: str) -> str:
    return MIME_TYPES.get(PurePath(filename).suffix.lower(), DEFAULT_MIME_TYPE)


def is_text_mime_type(mime_type: str) -> bool:
    return mime_type.startswith("text/") or mime_type in _TEXT_APPLICATION_TYPES


def unique_filename(name: str, taken: List[str]) -> str:
    """report.pdf -> report-2.pdf -> report-3.pdf ... until unused."""
    if name not in taken:
        return name
    path = PurePath(name)
    stem, suffix = path.stem, path.suffix
    counter = 2
    while f"{stem}-{counter}{suffix}" in taken:
        counter += 1
    return f"{stem}-{counter}{suffix}"


@dataclass
class FileEntry:
    filename: str
    original_name: str
    description: str = ""
    mime_type: str = DEFAULT_MIME_TYPE
    size: int = 0
    created: str = ""
    card_slugs: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filename": self.filename,
            "originalName": self.original_name,
            "description": self.description,
            "mimeType": self.mime_type,
            "size": self.size,
            "created": self.created,
            "cardSlugs": list(self.card_slugs),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileEntry":
        filename = str(data.get("filename", ""))
        slugs = data.get("cardSlugs")
        return cls(
            filename=filename,
            original_name=str(data.get("originalName") or filename),
            description=str(data.get("description") or ""),
            mime_type=str(data.get("mimeType") or mime_type_for(filename)),
            size=int(data.get("size") or 0),
            created=str(data.get("created") or ""),
            card_slugs=[s for s in slugs if isinstance(s, str)] if isinstance(slugs, list) else [],
        )


class FileService:
    """Attachment manifest + storage. Shares the per-project lock with ProjectService."""

    def __init__(self, workspace: Union[str, Path], project_locks: Optional[KeyedLock] = None):
        self.workspace = Path(workspace)
        self.project_locks = project_locks or KeyedLock("project lock")

    def _project_dir(self, slug: str) -> Path:
        return self.workspace / check_name(slug, "project slug")

    def _files_dir(self, slug: str) -> Path:
        return self._project_dir(slug) / FILES_DIR

    def _read_manifest(self, slug: str) -> List[FileEntry]:
        """Missing or unreadable manifest -> no files."""
        project_dir = self._project_dir(slug)
        if not (project_dir / PROJECT_FILE).is_file():
            raise ProjectNotFoundError(slug)
        try:
            data = read_json(project_dir / FILES_MANIFEST)
        except FileNotFoundError:
            return []
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable file manifest for {slug}: {e}")
            return []
        if not isinstance(data, dict) or not isinstance(data.get("files"), list):
            return []
        return [FileEntry.from_dict(e) for e in data["files"] if isinstance(e, dict) and e.get("filename")]

    def _write_manifest(self, slug: str, entries: List[FileEntry]) -> None:
        write_json(self._project_dir(slug) / FILES_MANIFEST, {"files": [e.to_dict() for e in entries]})

    @staticmethod
    def _find(entries: List[FileEntry], filename: str) -> FileEntry:
        for entry in entries:
            if entry.filename == filename:
                return entry
        raise AttachmentNotFoundError(filename)

    # ── Queries ──────────────────────────────────────────────

    async def list_files(self, project_slug: str) -> List[FileEntry]:
        return await asyncio.to_thread(self._read_manifest, project_slug)

    async def get_file(self, project_slug: str, filename: str) -> FileEntry:
        entries = await asyncio.to_thread(self._read_manifest, project_slug)
        return self._find(entries, filename)

    async def list_card_files(self, project_slug: str, card_slug: str) -> List[FileEntry]:
        entries = await asyncio.to_thread(self._read_manifest, project_slug)
        return [e for e in entries if card_slug in e.card_slugs]

    async def file_path(self, project_slug: str, filename: str) -> Path:
        """Absolute path of a stored file that is in the manifest."""
        await self.get_file(project_slug, filename)
        return self._files_dir(project_slug) / filename

    async def get_file_content(self, project_slug: str, filename: str) -> str:
        entry = await self.get_file(project_slug, filename)
        if not is_text_mime_type(entry.mime_type):
            raise ValidationError(f"File is binary ({entry.mime_type}). Cannot read as text.")
        path = self._files_dir(project_slug) / filename

        def read() -> str:
            with open(path, "r", encoding="utf-8", errors="replace") as f:
                return f.read()

        try:
            return await asyncio.to_thread(read)
        except FileNotFoundError:
            raise AttachmentNotFoundError(filename)

    # ── Mutations ────────────────────────────────────────────

    async def add_file(self, project_slug: str, original_name: str, data: bytes,
                       description: str = "") -> FileEntry:
        if isinstance(original_name, str):
            original_name = original_name.strip()
        check_name(original_name, "filename")
        if not isinstance(data, (bytes, bytearray)):
            raise ValidationError("File content must be bytes")
        if description is not None and not isinstance(description, str):
            raise ValidationError("description must be a string")

        async with self.project_locks.hold(project_slug):
            entries = await asyncio.to_thread(self._read_manifest, project_slug)
            files_dir = self._files_dir(project_slug)

            def taken_names() -> List[str]:
                on_disk = [p.name for p in files_dir.iterdir()] if files_dir.is_dir() else []
                return on_disk + [e.filename for e in entries]

            filename = unique_filename(original_name, await asyncio.to_thread(taken_names))
            entry = FileEntry(
                filename=filename,
                original_name=original_name,
                description=description or "",
                mime_type=mime_type_for(filename),
                size=len(data),
                created=utc_now(),
            )

            previous = list(entries)
            await asyncio.to_thread(self._write_manifest, project_slug, entries + [entry])

            def store_bytes() -> None:
                files_dir.mkdir(parents=True, exist_ok=True)
                (files_dir / filename).write_bytes(bytes(data))

            try:
                await asyncio.to_thread(store_bytes)
            except OSError:
                await asyncio.to_thread(self._write_manifest, project_slug, previous)
                raise

        logger.info(f"File added to {project_slug}: {filename} ({entry.size} bytes)")
        return entry

    async def delete_file(self, project_slug: str, filename: str) -> List[str]:
        """Remove a file. Returns the card slugs that referenced it."""
        async with self.project_locks.hold(project_slug):
            entries = await asyncio.to_thread(self._read_manifest, project_slug)
            entry = self._find(entries, filename)
            remaining = [e for e in entries if e.filename != filename]
            await asyncio.to_thread(self._write_manifest, project_slug, remaining)
            path = self._files_dir(project_slug) / filename
            try:
                await asyncio.to_thread(path.unlink)
            except FileNotFoundError:
                logger.warning(f"Stored file already missing: {project_slug}/{filename}")

        logger.info(f"File deleted from {project_slug}: {filename}")
        return list(entry.card_slugs)

    async def update_file_description(self, project_slug: str, filename: str, description: str) -> FileEntry:
        if not isinstance(description, str):
            raise ValidationError("description must be a string")
        async with self.project_locks.hold(project_slug):
            entries = await asyncio.to_thread(self._read_manifest, project_slug)
            entry = self._find(entries, filename)
            entry.description = description
            await asyncio.to_thread(self._write_manifest, project_slug, entries)
        return entry

    async def associate_file(self, project_slug: str, filename: str, card_slug: str) -> FileEntry:
        """Link a file to a card. Linking twice is a no-op."""
        check_name(card_slug, "card slug")
        async with self.project_locks.hold(project_slug):
            entries = await asyncio.to_thread(self._read_manifest, project_slug)
            entry = self._find(entries, filename)
            if card_slug not in entry.card_slugs:
                entry.card_slugs.append(card_slug)
                await asyncio.to_thread(self._write_manifest, project_slug, entries)
        return entry

    async def disassociate_file(self, project_slug: str, filename: str, card_slug: str) -> FileEntry:
        async with self.project_locks.hold(project_slug):
            entries = await asyncio.to_thread(self._read_manifest, project_slug)
            entry = self._find(entries, filename)
            if card_slug in entry.card_slugs:
                entry.card_slugs.remove(card_slug)
                await asyncio.to_thread(self._write_manifest, project_slug, entries)
        return entry

    async def remove_card_from_all_files(self, project_slug: str, card_slug: str) -> List[str]:
        """Drop a card from every file's links. Returns the affected filenames."""
        async with self.project_locks.hold(project_slug):
            entries = await asyncio.to_thread(self._read_manifest, project_slug)
            affected = []
            for entry in entries:
                if card_slug in entry.card_slugs:
                    entry.card_slugs.remove(card_slug)
                    affected.append(entry.filename)
            if affected:
                await asyncio.to_thread(self._write_manifest, project_slug, entries)
        return affected

    async def add_file_to_card(self, project_slug: str, card_slug: str, filename: str, content: str,
                               description: str = "", prefix: Optional[str] = None,
                               card_number: Optional[int] = None) -> FileEntry:
        """
        Store text content as a new file and link it to a card.

        A name without an extension gets ".md"; when the project has a prefix
        and the card a number the name becomes "<PREFIX>-<n>_<name>".
        """
        if not isinstance(filename, str) or not filename.strip():
            raise ValidationError("filename is required")
        filename = filename.strip()
        check_name(filename, "filename")
        if not isinstance(content, str) or not content:
            raise ValidationError("content is required")

        if not PurePath(filename).suffix:
            filename += ".md"
        if prefix and card_number is not None:
            filename = f"{prefix}-{card_number}_{filename}"

        entry = await self.add_file(project_slug, filename, content.encode("utf-8"), description)
        return await self.associate_file(project_slug, entry.filename, card_slug)
