"""
Vault document for Kiss2FA: TOTP entries plus a forest of folders.
"""
import re
import uuid
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

from errors import (
    FolderCycleError,
    ImmutableFieldError,
    InvalidSecretError,
    NotFoundError,
    VaultFormatError,
)
from models import (
    DEFAULT_DIGITS,
    DEFAULT_ENTRY_ICON,
    DEFAULT_FOLDER_COLOR,
    DEFAULT_FOLDER_ICON,
    DEFAULT_PERIOD,
    Folder,
    TOTPEntry,
    positive_int,
)

# Configure logging
logger = logging.getLogger(__name__)

SECRET_PATTERN = re.compile(r'^[A-Z2-7]+=*$')

ENTRY_UPDATABLE_FIELDS = ('name', 'icon', 'period', 'digits', 'folder_id')
ENTRY_IMMUTABLE_FIELDS = ('id', 'secret')
FOLDER_UPDATABLE_FIELDS = ('name', 'icon', 'color', 'is_expanded')


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class VaultDocument:
    """The unit of encryption: ordered entries and folders."""
    entries: List[TOTPEntry] = field(default_factory=list)
    folders: List[Folder] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Any) -> 'VaultDocument':
        """
        Build a document from decrypted JSON.

        Accepts {entries, folders} and the older entries-only list.

        Raises:
            VaultFormatError: If the payload is not a vault document
        """
        if isinstance(payload, list):
            logger.info("Upgrading entries-only vault payload")
            payload = {'entries': payload, 'folders': []}

        if not isinstance(payload, dict):
            raise VaultFormatError("Decrypted data is not a vault document")

        try:
            entries = [TOTPEntry.from_dict(item) for item in payload.get('entries') or []]
            folders = [Folder.from_dict(item) for item in payload.get('folders') or []]
        except (KeyError, TypeError, AttributeError, ValueError) as e:
            raise VaultFormatError(f"Malformed vault document: {e}") from e

        return cls(entries=entries, folders=folders)

    def to_payload(self) -> Dict[str, Any]:
        return {
            'entries': [entry.to_dict() for entry in self.entries],
            'folders': [folder.to_dict() for folder in self.folders],
        }

    # Entries

    def get_entry(self, entry_id: str) -> TOTPEntry:
        for entry in self.entries:
            if entry.id == entry_id:
                return entry
        raise NotFoundError(f"Entry not found: {entry_id}")

    def add_entry(self, name: str, secret: str, icon: str = DEFAULT_ENTRY_ICON,
                  period: Optional[int] = DEFAULT_PERIOD, digits: Optional[int] = DEFAULT_DIGITS,
                  folder_id: Optional[str] = None) -> TOTPEntry:
        """
        Append a new entry with a fresh id.

        Args:
            name: Display name
            secret: Normalized Base32 secret
            icon: Glyph or data:image payload
            period: Seconds per code window, None for the default
            digits: Code length, None for the default
            folder_id: Optional folder to place the entry in

        Returns:
            The created entry

        Raises:
            InvalidSecretError: If the secret is not normalized Base32
            ValueError: If period or digits is not a positive integer
            NotFoundError: If folder_id does not exist
        """
        if not SECRET_PATTERN.match(secret):
            raise InvalidSecretError(
                "Secret keys should only contain letters A-Z and numbers 2-7"
            )
        period = DEFAULT_PERIOD if period is None else positive_int('period', period)
        digits = DEFAULT_DIGITS if digits is None else positive_int('digits', digits)
        if folder_id is not None:
            self.get_folder(folder_id)

        entry = TOTPEntry(
            id=_new_id(),
            name=name,
            secret=secret,
            icon=icon or DEFAULT_ENTRY_ICON,
            period=period,
            digits=digits,
            folder_id=folder_id,
        )
        self.entries.append(entry)
        return entry

    def update_entry(self, entry_id: str, **changes) -> TOTPEntry:
        """
        Update an entry's display fields.

        Raises:
            ImmutableFieldError: If id or secret is in changes
            ValueError: If an unknown field is in changes, or period/digits
                is not a positive integer
            NotFoundError: If the entry or target folder does not exist
        """
        for name, value in changes.items():
            if name in ENTRY_IMMUTABLE_FIELDS:
                raise ImmutableFieldError(f"Entry field '{name}' cannot be changed")
            if name not in ENTRY_UPDATABLE_FIELDS:
                raise ValueError(f"Unknown entry field: {name}")
            if name in ('period', 'digits'):
                positive_int(name, value)

        entry = self.get_entry(entry_id)
        if changes.get('folder_id') is not None:
            self.get_folder(changes['folder_id'])

        updated = replace(entry, **changes)
        self.entries[self.entries.index(entry)] = updated
        return updated

    def delete_entry(self, entry_id: str) -> None:
        entry = self.get_entry(entry_id)
        self.entries.remove(entry)

    def move_entry(self, entry_id: str, folder_id: Optional[str]) -> TOTPEntry:
        """Move an entry into a folder, or to the root when folder_id is None."""
        return self.update_entry(entry_id, folder_id=folder_id)

    def entries_in(self, folder_id: Optional[str]) -> List[TOTPEntry]:
        return [entry for entry in self.entries if entry.folder_id == folder_id]

    def search(self, term: str, folder_id: Optional[str] = None) -> List[TOTPEntry]:
        """Entries whose name contains term, optionally limited to one folder."""
        needle = term.lower()
        return [
            entry for entry in self.entries
            if needle in entry.name.lower()
            and (folder_id is None or entry.folder_id == folder_id)
        ]

    # Folders

    def get_folder(self, folder_id: str) -> Folder:
        for folder in self.folders:
            if folder.id == folder_id:
                return folder
        raise NotFoundError(f"Folder not found: {folder_id}")

    def add_folder(self, name: str, icon: str = DEFAULT_FOLDER_ICON,
                   color: str = DEFAULT_FOLDER_COLOR, is_expanded: bool = True,
                   parent_id: Optional[str] = None) -> Folder:
        if parent_id is not None:
            self.get_folder(parent_id)

        folder = Folder(
            id=_new_id(),
            name=name,
            icon=icon or DEFAULT_FOLDER_ICON,
            color=color or DEFAULT_FOLDER_COLOR,
            is_expanded=is_expanded,
            parent_id=parent_id,
        )
        self.folders.append(folder)
        return folder

    def update_folder(self, folder_id: str, **changes) -> Folder:
        """
        Update a folder's display fields; a parent_id change is a move.

        Raises:
            ValueError: If an unknown field is in changes
            NotFoundError: If the folder does not exist
            FolderCycleError: If the parent change would create a cycle
        """
        parent_given = 'parent_id' in changes
        parent_id = changes.pop('parent_id', None)
        for name in changes:
            if name not in FOLDER_UPDATABLE_FIELDS:
                raise ValueError(f"Unknown folder field: {name}")

        folder = self.get_folder(folder_id)
        if parent_given:
            self._check_move(folder_id, parent_id)
            changes['parent_id'] = parent_id

        updated = replace(folder, **changes)
        self.folders[self.folders.index(folder)] = updated
        return updated

    def move_folder(self, folder_id: str, parent_id: Optional[str]) -> Folder:
        """
        Re-parent a folder, or move it to the root when parent_id is None.

        Raises:
            FolderCycleError: If parent_id is the folder itself or one of its
                descendants; the document is left unchanged
        """
        return self.update_folder(folder_id, parent_id=parent_id)

    def delete_folder(self, folder_id: str) -> None:
        """Delete a folder; its entries and child folders move to the root."""
        folder = self.get_folder(folder_id)

        self.entries = [
            replace(entry, folder_id=None) if entry.folder_id == folder_id else entry
            for entry in self.entries
        ]
        self.folders = [
            replace(child, parent_id=None) if child.parent_id == folder_id else child
            for child in self.folders
            if child is not folder
        ]

    def children(self, folder_id: Optional[str]) -> List[Folder]:
        return [folder for folder in self.folders if folder.parent_id == folder_id]

    def ancestors(self, folder_id: str) -> List[Folder]:
        """
        Parents of a folder, nearest first.

        Raises:
            FolderCycleError: If the stored parent chain loops
        """
        by_id = {folder.id: folder for folder in self.folders}
        chain = []
        visited = {folder_id}
        current = self.get_folder(folder_id).parent_id

        while current is not None and current in by_id:
            if current in visited or len(chain) >= len(by_id):
                raise FolderCycleError(f"Folder parent chain loops at {current}")
            visited.add(current)
            parent = by_id[current]
            chain.append(parent)
            current = parent.parent_id

        return chain

    def _check_move(self, folder_id: str, parent_id: Optional[str]) -> None:
        if parent_id is None:
            return
        if parent_id == folder_id:
            raise FolderCycleError("A folder cannot be its own parent")

        self.get_folder(parent_id)
        by_id = {folder.id: folder for folder in self.folders}

        # Walk up from the proposed parent; meeting folder_id means it is a descendant.
        visited = set()
        current = parent_id
        while current is not None and current in by_id:
            if current == folder_id:
                raise FolderCycleError("A folder cannot be moved under one of its descendants")
            if current in visited or len(visited) >= len(by_id):
                raise FolderCycleError(f"Folder parent chain loops at {current}")
            visited.add(current)
            current = by_id[current].parent_id
